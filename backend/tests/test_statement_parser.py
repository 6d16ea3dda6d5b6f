"""
BuzzSync Backend — Statement Classifier Unit Tests
====================================================

What we test:
    ✅ select / insert / update classify into their variants
    ✅ everything else (delete, ddl, with, stacked statements) is forbidden
    ✅ $n placeholders become bound parameters, never text
    ✅ quotes, dollar quotes and comments are respected while scanning
    ✅ malformed input is a ValidationError
"""

import pytest

from buzzsync.exceptions import ForbiddenOperation, ValidationError
from buzzsync.services.statement_parser import (
    InsertStatement,
    SelectStatement,
    StatementKind,
    UpdateStatement,
    parse_batch,
    parse_statement,
)


class TestClassification:

    @pytest.mark.parametrize(
        "sql, variant",
        [
            ("SELECT 1", SelectStatement),
            ("  select * from venues", SelectStatement),
            ("INSERT INTO venues (name) VALUES ('x')", InsertStatement),
            ("update venues set name = 'x'", UpdateStatement),
            ("-- header\n/* block */ SELECT 1", SelectStatement),
            ("(SELECT 1) UNION (SELECT 2)", SelectStatement),
        ],
    )
    def test_allowed_kinds(self, sql, variant):
        stmt = parse_statement(sql)
        assert isinstance(stmt, variant)
        assert stmt.kind == StatementKind(variant.kind)

    @pytest.mark.parametrize(
        "sql, keyword",
        [
            ("DELETE FROM venues", "delete"),
            ("DROP TABLE venues", "drop"),
            ("TRUNCATE venues", "truncate"),
            ("WITH gone AS (DELETE FROM venues RETURNING id) SELECT * FROM gone", "with"),
            ("/* SELECT */ DELETE FROM venues", "delete"),
        ],
    )
    def test_disallowed_kinds_are_forbidden(self, sql, keyword):
        with pytest.raises(ForbiddenOperation) as exc_info:
            parse_statement(sql, index=3)
        assert exc_info.value.keyword == keyword
        assert exc_info.value.operation_index == 3

    def test_unrecognisable_start_is_forbidden(self):
        with pytest.raises(ForbiddenOperation) as exc_info:
            parse_statement("42")
        assert exc_info.value.keyword is None

    def test_restricted_allow_list(self):
        with pytest.raises(ForbiddenOperation):
            parse_statement("INSERT INTO venues (name) VALUES ('x')", allowed={StatementKind.SELECT})


class TestStatementBoundaries:

    def test_trailing_semicolon_allowed(self):
        assert str(parse_statement("SELECT 1;").clause) == "SELECT 1"

    def test_trailing_comment_after_semicolon_allowed(self):
        assert str(parse_statement("SELECT 1; -- done\n").clause) == "SELECT 1"

    def test_second_statement_rejected(self):
        with pytest.raises(ForbiddenOperation) as exc_info:
            parse_statement("SELECT 1; DELETE FROM venues")
        assert exc_info.value.keyword == "multiple_statements"

    def test_semicolon_inside_literal_is_not_a_boundary(self):
        stmt = parse_statement("SELECT ';DELETE FROM venues'")
        assert isinstance(stmt, SelectStatement)

    def test_semicolon_inside_escape_string(self):
        stmt = parse_statement("SELECT E'it\\'s; DROP'")
        assert isinstance(stmt, SelectStatement)

    def test_semicolon_inside_dollar_quotes(self):
        assert isinstance(parse_statement("SELECT $$;DELETE$$"), SelectStatement)
        assert isinstance(parse_statement("SELECT $tag$ ; $tag$"), SelectStatement)

    def test_semicolon_inside_quoted_identifier(self):
        assert isinstance(parse_statement('SELECT 1 AS "a;b"'), SelectStatement)


class TestParameterBinding:

    def test_placeholders_become_binds(self):
        stmt = parse_statement(
            "UPDATE venues SET name = $1 WHERE id = $2",
            ["Aurora", "abc"],
        )
        assert str(stmt.clause) == "UPDATE venues SET name = :p1 WHERE id = :p2"
        assert stmt.params == {"p1": "Aurora", "p2": "abc"}

    def test_repeated_placeholder_binds_once(self):
        stmt = parse_statement("SELECT $1, $1", [7])
        assert stmt.params == {"p1": 7}

    def test_unreferenced_params_are_not_bound(self):
        stmt = parse_statement("SELECT $2", ["unused", "used"])
        assert stmt.params == {"p2": "used"}

    def test_placeholder_beyond_params_rejected(self):
        with pytest.raises(ValidationError):
            parse_statement("SELECT $3", [1, 2])

    def test_placeholder_zero_rejected(self):
        with pytest.raises(ValidationError):
            parse_statement("SELECT $0", [1])

    def test_placeholder_inside_literal_is_text(self):
        stmt = parse_statement("SELECT '$1'")
        assert stmt.params == {}
        assert str(stmt.clause) == "SELECT '$1'"

    def test_cast_after_placeholder(self):
        stmt = parse_statement("SELECT $1::text", ["x"])
        assert str(stmt.clause) == "SELECT :p1::text"
        assert stmt.params == {"p1": "x"}

    def test_colon_in_literal_is_not_a_bind(self):
        stmt = parse_statement("SELECT 'a:b'")
        assert str(stmt.clause) == "SELECT 'a:b'"
        assert stmt.params == {}

    def test_value_that_looks_like_sql_stays_a_value(self):
        payload = "x'; DROP TABLE venues; --"
        stmt = parse_statement("SELECT * FROM venues WHERE name = $1", [payload])
        assert stmt.params == {"p1": payload}
        assert "DROP" not in str(stmt.clause)

    def test_non_scalar_param_rejected(self):
        with pytest.raises(ValidationError):
            parse_statement("SELECT $1", [{"nested": True}])


class TestMalformedInput:

    @pytest.mark.parametrize("sql", ["", "   ", "-- only a comment", "/* nothing */"])
    def test_empty_statement(self, sql):
        with pytest.raises(ValidationError):
            parse_statement(sql)

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT 'unterminated",
            'SELECT "unterminated',
            "SELECT 1 /* open /* nested */",
            "SELECT $$never closed",
        ],
    )
    def test_unterminated_regions(self, sql):
        with pytest.raises(ValidationError):
            parse_statement(sql)


class TestParseBatch:

    def test_whole_batch_classified(self):
        parsed = parse_batch([
            ("INSERT INTO venues (name) VALUES ($1)", ["a"]),
            ("SELECT * FROM venues", []),
        ])
        assert [p.kind for p in parsed] == [StatementKind.INSERT, StatementKind.SELECT]
        assert [p.index for p in parsed] == [0, 1]

    def test_first_bad_operation_aborts(self):
        with pytest.raises(ForbiddenOperation) as exc_info:
            parse_batch([
                ("SELECT 1", []),
                ("DELETE FROM venues", []),
                ("SELECT 2", []),
            ])
        assert exc_info.value.operation_index == 1
