"""Initialize the embedded SQLite store (ai_copilot.db) with the demo table.

Usage:
  python scripts/init_sqlite.py [path]
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from settings import Settings  # noqa: E402
from stores import DEMO_TABLE, EmbeddedStore  # noqa: E402


def main():
    settings = Settings.from_env()
    path = sys.argv[1] if len(sys.argv) > 1 else settings.embedded_db_path

    store = EmbeddedStore(path)
    rows = store.query(f"SELECT COUNT(*) AS c FROM {DEMO_TABLE}")
    tables = sorted({c.table_name for c in store.schema()})
    store.dispose()

    print(f"✅ {path}: {DEMO_TABLE} has {rows[0]['c']} rows; tables: {', '.join(tables)}")


if __name__ == "__main__":
    main()
