from conftest import fake_llm, unreachable_llm
from llm import (
    ScriptSynthesizer,
    SQLGenerator,
    format_schema,
    parse_generation_reply,
    strip_code_fences,
)
from stores import SchemaColumn

SCHEMA = [
    SchemaColumn("users", "id", "integer", "NO"),
    SchemaColumn("users", "name", "text", "YES"),
    SchemaColumn("orders", "amount", "numeric", "YES"),
]


def test_strip_code_fences():
    assert strip_code_fences("```python\nprint(1)\n```") == "print(1)"
    assert strip_code_fences("Here you go:\n```\nSELECT 1\n```\nEnjoy") == "SELECT 1"
    assert strip_code_fences("```sql\nSELECT 1") == "SELECT 1"
    assert strip_code_fences("SELECT 1") == "SELECT 1"


def test_parse_json_reply():
    parsed = parse_generation_reply('```json\n{"sql": "SELECT name FROM users;", "explanation": "Lists users."}\n```')
    assert parsed.sql == "SELECT name FROM users;"
    assert parsed.explanation == "Lists users."


def test_parse_bare_sql_reply():
    parsed = parse_generation_reply("SQLQuery: SELECT name FROM users")
    assert parsed.sql == "SELECT name FROM users"
    assert parsed.explanation == ""


def test_parse_prose_reply_yields_no_sql():
    parsed = parse_generation_reply("Sorry, I can't help with that.")
    assert parsed.sql == ""


def test_format_schema_groups_tables():
    text = format_schema(SCHEMA)
    assert "Table users: id (integer, NOT NULL), name (text, NULL)" in text
    assert "Table orders: amount (numeric, NULL)" in text
    assert format_schema([]) == "(no tables available)"


def test_generate_success():
    gen = SQLGenerator(fake_llm('{"sql": "SELECT COUNT(*) FROM users", "explanation": "Counts users."}'))
    result = gen.generate("How many users?", SCHEMA, "postgresql")
    assert result.ok
    assert result.sql == "SELECT COUNT(*) FROM users"
    assert result.explanation == "Counts users."
    assert result.error is None


def test_generate_without_model_returns_error():
    result = SQLGenerator(None).generate("How many users?", SCHEMA, "sqlite")
    assert result.sql == ""
    assert "not configured" in result.error


def test_generate_with_unreachable_model_returns_error():
    result = SQLGenerator(unreachable_llm()).generate("How many users?", SCHEMA, "sqlite")
    assert result.sql == ""
    assert "unreachable" in result.error


def test_generate_with_empty_reply_returns_error():
    result = SQLGenerator(fake_llm('{"sql": "", "explanation": ""}')).generate("?", SCHEMA, "sqlite")
    assert result.sql == ""
    assert result.error


def test_explain():
    assert SQLGenerator(fake_llm("Counts the users.")).explain("SELECT COUNT(*) FROM users") == "Counts the users."
    assert SQLGenerator(unreachable_llm()).explain("SELECT 1") == ""


def test_script_template_without_model():
    script = ScriptSynthesizer(None, "ai_copilot.db").synthesize("csv_x_abcde", 'SELECT """odd""" FROM csv_x_abcde')
    assert "sqlite3.connect('ai_copilot.db')" in script
    assert 'sql = """SELECT \\"\\"\\"odd\\"\\"\\" FROM csv_x_abcde"""' in script
    assert "print(df.head(10))" in script


def test_script_from_model_is_unfenced():
    synth = ScriptSynthesizer(fake_llm("```python\nimport sqlite3\nprint('hi')\n```"), "ai_copilot.db")
    assert synth.synthesize("t", "SELECT 1") == "import sqlite3\nprint('hi')"


def test_script_model_failure_uses_template():
    synth = ScriptSynthesizer(unreachable_llm(), "ai_copilot.db")
    assert synth.synthesize("t", "SELECT 1").startswith("# Auto-generated Python script")


def test_parse_reply_skips_prose_before_sql():
    parsed = parse_generation_reply("You can select the users like this:\nSELECT name FROM users")
    assert parsed.sql == "SELECT name FROM users"

    parsed = parse_generation_reply("I would not update anything here.\n  select count(*) from users")
    assert parsed.sql == "select count(*) from users"


def test_parse_reply_with_keyword_only_in_prose_yields_no_sql():
    assert parse_generation_reply("Please select a table first.").sql == ""
