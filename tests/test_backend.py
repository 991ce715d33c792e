import threading
import time

import pytest

from backend import BackendRouter, SchemaCatalog
from errors import BackendError, BackendUnavailable
from stores import DEMO_TABLE, EmbeddedStore, PrimaryStore, quote_ident


class CountingPrimary(PrimaryStore):
    def __init__(self):
        super().__init__("")
        self.attempts = 0

    def _create_engine(self):
        self.attempts += 1
        return super()._create_engine()


class SlowInitStore(EmbeddedStore):
    def __init__(self, path):
        super().__init__(path)
        self.engines_built = 0

    def _create_engine(self):
        self.engines_built += 1
        time.sleep(0.05)
        return super()._create_engine()


@pytest.fixture
def two_sqlite_router(tmp_path):
    primary = EmbeddedStore(str(tmp_path / "primary.db"))
    embedded = EmbeddedStore(str(tmp_path / "embedded.db"))
    yield BackendRouter(primary, embedded)
    primary.dispose()
    embedded.dispose()


def test_unconfigured_primary_falls_back_to_embedded(router):
    assert router.run_query(f"SELECT COUNT(*) AS c FROM {DEMO_TABLE}") == [{"c": 5}]

    snapshot = router.describe_schema()
    assert snapshot.dialect == "sqlite"
    assert DEMO_TABLE in snapshot.table_names


def test_primary_is_preferred(two_sqlite_router):
    two_sqlite_router.primary.execute_ddl('CREATE TABLE "only_primary" ("x" TEXT)')

    tables = {c.table_name for c in two_sqlite_router.get_schema()}
    assert "only_primary" in tables
    assert two_sqlite_router.run_query('SELECT COUNT(*) AS c FROM "only_primary"') == [{"c": 0}]


def test_query_error_on_primary_retries_on_embedded(two_sqlite_router):
    two_sqlite_router.embedded.execute_ddl('CREATE TABLE "only_embedded" ("x" TEXT)')
    assert two_sqlite_router.run_query('SELECT COUNT(*) AS c FROM "only_embedded"') == [{"c": 0}]


def test_routing_is_not_sticky(settings):
    primary = CountingPrimary()
    embedded = EmbeddedStore(settings.embedded_db_path)
    r = BackendRouter(primary, embedded)

    r.run_query("SELECT 1 AS one")
    r.run_query("SELECT 1 AS one")
    assert primary.attempts == 2
    embedded.dispose()


def test_both_stores_failing_raises_backend_unavailable(tmp_path):
    # a directory cannot be opened as a SQLite file
    r = BackendRouter(PrimaryStore(""), EmbeddedStore(str(tmp_path)))
    with pytest.raises(BackendUnavailable):
        r.run_query("SELECT 1")
    with pytest.raises(BackendUnavailable):
        r.get_schema()


def test_run_ddl_and_batch_insert(router):
    router.run_ddl('CREATE TABLE "pairs" ("a" TEXT, "b" TEXT)')
    inserted = router.run_batch_insert("pairs", ["a", "b"], [{"a": "1", "b": "2"}, {"a": "3"}])
    assert inserted == 2
    assert router.run_query('SELECT a, b FROM "pairs" ORDER BY a') == [{"a": "1", "b": "2"}, {"a": "3", "b": ""}]


def test_engine_is_built_once_under_concurrent_first_use(tmp_path):
    store = SlowInitStore(str(tmp_path / "race.db"))
    engines = []
    threads = [threading.Thread(target=lambda: engines.append(store.engine)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.engines_built == 1
    assert len({id(e) for e in engines}) == 1
    store.dispose()


def test_demo_table_is_seeded_once(tmp_path):
    path = str(tmp_path / "seed.db")
    first = EmbeddedStore(path)
    assert first.query(f"SELECT COUNT(*) AS c FROM {DEMO_TABLE}") == [{"c": 5}]
    first.dispose()

    second = EmbeddedStore(path)
    assert second.query(f"SELECT COUNT(*) AS c FROM {DEMO_TABLE}") == [{"c": 5}]
    second.dispose()


def test_embedded_schema_reports_nullability(router):
    cols = {c.column_name: c for c in router.embedded.table_columns(DEMO_TABLE)}
    assert cols["name"].is_nullable == "YES"
    assert cols["value"].data_type == "INTEGER"


def test_quote_ident_refuses_unsanitized_names():
    assert quote_ident("csv_abc_12345") == '"csv_abc_12345"'
    with pytest.raises(BackendError):
        quote_ident('bad"; DROP TABLE x; --')
    with pytest.raises(BackendError):
        quote_ident("")


def test_catalog_reads_are_fresh_and_stable(router):
    catalog = SchemaCatalog(router)
    first = catalog.read()
    second = catalog.read()
    assert [c.to_dict() for c in first] == [c.to_dict() for c in second]

    router.run_ddl('CREATE TABLE "later" ("x" TEXT)')
    assert "later" in {c.table_name for c in catalog.read()}


def test_catalog_filters_to_one_table(router):
    cols = SchemaCatalog(router).read(DEMO_TABLE)
    assert cols and {c.table_name for c in cols} == {DEMO_TABLE}


def test_dataset_columns_fall_back_to_native_introspection(two_sqlite_router):
    two_sqlite_router.embedded.execute_ddl('CREATE TABLE "csv_test_abcde" ("name" TEXT, "age" TEXT)')
    cols = SchemaCatalog(two_sqlite_router).dataset_columns("csv_test_abcde")
    assert [c.column_name for c in cols] == ["name", "age"]


class BrokenSeedStore(EmbeddedStore):
    def __init__(self, path):
        super().__init__(path)
        self.seed_attempts = 0

    def _seed_demo_table(self, engine):
        self.seed_attempts += 1
        raise ConnectionError("server closed the connection")


def test_failed_connect_is_not_retried_during_cooldown(tmp_path):
    store = BrokenSeedStore(str(tmp_path / "down.db"))
    with pytest.raises(ConnectionError):
        store.query("SELECT 1")
    with pytest.raises(BackendError):
        store.query("SELECT 1")
    assert store.seed_attempts == 1

    store._failed_at -= store.retry_cooldown
    with pytest.raises(ConnectionError):
        store.query("SELECT 1")
    assert store.seed_attempts == 2


def test_colon_and_percent_inside_literals_are_not_bind_params(router):
    rows = router.run_query(f"SELECT name FROM {DEMO_TABLE} WHERE name <> 'at :noon' AND name LIKE 'Item%' ORDER BY name")
    assert [r["name"] for r in rows][:1] == ["Item 1"]
    assert len(rows) == 5
