import pytest

from ledgerbot.assistant.query_engine import validate_query

SCOPED = "SELECT * FROM transactions WHERE user_id = $1"


def test_scoped_select_is_valid():
    result = validate_query(SCOPED)
    assert result.valid is True
    assert result.reason is None


@pytest.mark.parametrize(
    "query",
    [
        "DELETE FROM transactions WHERE user_id = $1",
        "update transactions set amount = 0 where user_id = $1",
        "WITH t AS (SELECT 1) SELECT * FROM t WHERE user_id = $1",
        "  insert into transactions values (1)",
        "",
        "EXPLAIN SELECT * FROM transactions WHERE user_id = $1",
    ],
)
def test_non_select_is_rejected(query):
    result = validate_query(query)
    assert result.valid is False
    assert result.reason == "only read queries are allowed."


def test_read_keyword_is_case_insensitive():
    assert validate_query("  select category from transactions where user_id = $1").valid


@pytest.mark.parametrize(
    "query",
    [
        "SELECT * FROM transactions",
        "SELECT * FROM transactions WHERE user_id = 7",
        "SELECT * FROM transactions WHERE owner = $1",
        "SELECT user_id, amount FROM transactions WHERE user_id = $1",
        "SELECT * FROM transactions WHERE user_id = $1 OR 1 = 1",
        "SELECT amount FROM transactions WHERE user_id = $1 UNION SELECT amount FROM transactions",
        "SELECT * FROM transactions WHERE user_id = $1 AND amount > (SELECT AVG(amount) FROM transactions)",
    ],
)
def test_unscoped_or_widened_query_is_rejected(query):
    result = validate_query(query)
    assert result.valid is False
    assert result.reason == "query must filter by tenant."


def test_scoped_subquery_is_valid():
    query = (
        "SELECT description, amount FROM transactions WHERE user_id = $1 "
        "AND amount > (SELECT AVG(amount) FROM transactions WHERE user_id = $1)"
    )
    assert validate_query(query).valid


def test_join_with_every_table_scoped_is_valid():
    query = (
        "SELECT p.page_notes, COUNT(t.id) FROM transactions t JOIN pages p ON p.id = t.page_id "
        "WHERE t.user_id = $1 AND p.user_id = $1 GROUP BY p.page_notes ORDER BY p.page_notes LIMIT 20"
    )
    assert validate_query(query).valid


@pytest.mark.parametrize(
    "query, keyword",
    [
        ("SELECT * FROM transactions WHERE user_id = $1 AND 1 = 1 DROP TABLE users", "DROP"),
        ("SELECT * INTO backup FROM transactions WHERE user_id = $1", "INTO"),
        ("SELECT pg_sleep(10) FROM transactions WHERE user_id = $1", "PG_SLEEP"),
        ("SELECT * FROM transactions WHERE user_id = $1 -- AND type = 'debit'", "--"),
        ("SELECT * FROM transactions WHERE user_id = $1 /* hidden */", "/*"),
    ],
)
def test_forbidden_keywords_are_rejected(query, keyword):
    result = validate_query(query)
    assert result.valid is False
    assert result.reason == f"forbidden keyword: {keyword}"


def test_keyword_match_is_whole_word():
    """updated_at, created_at and descriptions like 'Deleted items' are not verbs"""
    query = (
        "SELECT description, updated_at, created_at FROM transactions "
        "WHERE user_id = $1 AND description ILIKE '%deleted_stock%' ORDER BY created_at DESC LIMIT 20"
    )
    assert validate_query(query).valid


@pytest.mark.parametrize(
    "query",
    [
        "SELECT * FROM transactions WHERE user_id = $1;",
        "SELECT * FROM transactions WHERE user_id = $1; VACUUM",
        "SELECT * FROM transactions WHERE user_id = $1 AND description = 'a;b'",
    ],
)
def test_statement_separator_is_rejected(query):
    result = validate_query(query)
    assert result.valid is False
    assert result.reason == "only a single statement is allowed."


def test_first_failing_rule_wins():
    # Unscoped and mutating: the scope rule comes first
    result = validate_query("SELECT * FROM transactions; DROP TABLE users")
    assert result.reason == "query must filter by tenant."
