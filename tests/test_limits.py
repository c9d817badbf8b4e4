import sqlglot

from sql_guard import apply_row_limit


def _limit(sql: str, cap: int = 200):
    return apply_row_limit(sql, sqlglot.parse_one(sql, read="postgres"), cap)


def test_appends_limit_when_missing():
    limited = _limit("SELECT id FROM buyers")
    assert limited.sql == "SELECT id FROM buyers\nLIMIT 200"
    assert limited.truncated is True


def test_keeps_smaller_literal_limit():
    limited = _limit("SELECT id FROM buyers LIMIT 10")
    assert limited.sql == "SELECT id FROM buyers LIMIT 10"
    assert limited.truncated is False


def test_limit_equal_to_cap_is_kept():
    limited = _limit("SELECT id FROM buyers LIMIT 200")
    assert limited.truncated is False


def test_wraps_larger_limit():
    limited = _limit("SELECT id FROM buyers ORDER BY id LIMIT 5000 OFFSET 10")
    assert limited.sql.startswith("SELECT * FROM (\n")
    assert "LIMIT 5000 OFFSET 10" in limited.sql
    assert limited.sql.endswith(") AS q\nLIMIT 200")
    assert limited.truncated is True


def test_wraps_union():
    limited = _limit("SELECT id FROM buyers UNION ALL SELECT id FROM suppliers", cap=50)
    assert limited.sql.startswith("SELECT * FROM (")
    assert limited.sql.endswith("LIMIT 50")


def test_wraps_with_clause_even_with_limit():
    sql = "WITH b AS (SELECT id FROM buyers) SELECT id FROM b LIMIT 5"
    limited = _limit(sql)
    assert limited.sql == f"SELECT * FROM (\n{sql}\n) AS q\nLIMIT 200"
    assert limited.truncated is True
