"""
BuzzSync Backend — Statement Classifier
=========================================

What:  Turns raw client statements into tagged, executable variants
       (SelectStatement / InsertStatement / UpdateStatement) with their
       positional placeholders rewritten into real bound parameters.
Why:   The transaction gateway accepts SQL from a mobile client. Nothing may
       reach storage unless it has been classified against the allow-list,
       and parameter values must never be spliced into statement text.
How:   A single left-to-right scan that understands quoting and comments:

           'text' ''escaped''   E'back\\slash'   "Quoted Ident"
           $$dollar$$   $tag$dollar$tag$   -- line   /* nested /* */ */

       Outside those regions:
           $n   → :pn   (n must be 1..len(params))
           :    → \\:   (so SQLAlchemy text() never sees a stray bind)
           ;    → ends the statement; anything but whitespace or comments
                  after it is a second statement and is rejected

Classification is by leading keyword only, after skipping whitespace,
comments and opening parentheses. Anything that is not select/insert/update
(delete, ddl, with, call, ...) is a ForbiddenOperation.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Collection, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import text
from sqlalchemy.sql.elements import TextClause

from buzzsync.exceptions import ForbiddenOperation, ValidationError

logger = logging.getLogger(__name__)


class StatementKind(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"


ALL_KINDS = frozenset(StatementKind)

_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class ParsedStatement:
    """
    A validated statement ready for execution.

    Attributes:
        index:   Position in the submitted batch (0-based)
        clause:  TextClause with `:pN` binds in place of `$N`
        params:  Bind values for the placeholders the statement references
    """

    index: int
    clause: TextClause
    params: Dict[str, Any]

    kind: ClassVar[StatementKind]


class SelectStatement(ParsedStatement):
    kind = StatementKind.SELECT


class InsertStatement(ParsedStatement):
    kind = StatementKind.INSERT


class UpdateStatement(ParsedStatement):
    kind = StatementKind.UPDATE


_VARIANTS = {
    StatementKind.SELECT: SelectStatement,
    StatementKind.INSERT: InsertStatement,
    StatementKind.UPDATE: UpdateStatement,
}


# ── Scanner helpers ───────────────────────────────────────────────────────

def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _skip_comment(sql: str, i: int, index: int) -> Optional[int]:
    """If a comment starts at i, return the index just past it."""
    if sql.startswith("--", i):
        end = sql.find("\n", i)
        return len(sql) if end == -1 else end + 1
    if sql.startswith("/*", i):
        depth = 0
        j = i
        while j < len(sql):
            if sql.startswith("/*", j):
                depth += 1
                j += 2
            elif sql.startswith("*/", j):
                depth -= 1
                j += 2
                if depth == 0:
                    return j
            else:
                j += 1
        raise ValidationError(
            message=f"Operation {index} has an unterminated block comment",
            field=f"operations[{index}].sql",
        )
    return None


def _skip_quoted(sql: str, i: int, quote: str, backslash_escapes: bool, index: int) -> int:
    """Return the index just past the literal that opens at i."""
    j = i + 1
    while j < len(sql):
        ch = sql[j]
        if backslash_escapes and ch == "\\":
            j += 2
            continue
        if ch == quote:
            if sql.startswith(quote * 2, j):
                j += 2
                continue
            return j + 1
        j += 1
    what = "identifier" if quote == '"' else "string literal"
    raise ValidationError(
        message=f"Operation {index} has an unterminated quoted {what}",
        field=f"operations[{index}].sql",
    )


def _leading_keyword(sql: str, index: int) -> str:
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch.isspace() or ch == "(":
            i += 1
            continue
        end = _skip_comment(sql, i, index)
        if end is not None:
            i = end
            continue
        break

    if i >= len(sql):
        raise ValidationError(
            message=f"Operation {index} has an empty statement",
            field=f"operations[{index}].sql",
        )

    j = i
    while j < len(sql) and (sql[j].isalpha() or sql[j] == "_"):
        j += 1
    return sql[i:j].lower()


def _rewrite(sql: str, index: int, param_count: int) -> Tuple[str, Set[int]]:
    """
    Rewrite placeholders and escape colons so text() sees only our binds.

    Returns the rewritten text and the set of 1-based placeholder numbers
    the statement actually references.
    """
    out: List[str] = []
    used: Set[int] = set()
    terminated = False
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]

        if ch.isspace():
            out.append(ch)
            i += 1
            continue

        end = _skip_comment(sql, i, index)
        if end is not None:
            out.append(" ")
            i = end
            continue

        if terminated:
            raise ForbiddenOperation(
                message=f"Operation {index} contains more than one statement",
                operation_index=index,
                keyword="multiple_statements",
            )

        if ch == ";":
            terminated = True
            i += 1
            continue

        if ch == "'":
            escapes = i > 0 and sql[i - 1] in "eE" and (i == 1 or not _is_ident_char(sql[i - 2]))
            end = _skip_quoted(sql, i, "'", escapes, index)
            out.append(sql[i:end].replace(":", "\\:"))
            i = end
            continue

        if ch == '"':
            end = _skip_quoted(sql, i, '"', False, index)
            out.append(sql[i:end].replace(":", "\\:"))
            i = end
            continue

        if ch == "$" and (i == 0 or not _is_ident_char(sql[i - 1])):
            j = i + 1
            while j < n and sql[j].isdigit():
                j += 1
            if j > i + 1:
                number = int(sql[i + 1:j])
                if number < 1 or number > param_count:
                    raise ValidationError(
                        message=(
                            f"Operation {index} references ${number} but "
                            f"{param_count} parameter(s) were supplied"
                        ),
                        field=f"operations[{index}].params",
                    )
                used.add(number)
                out.append(f":p{number}")
                i = j
                continue

            tag = _DOLLAR_TAG.match(sql, i)
            if tag:
                delimiter = tag.group(0)
                close = sql.find(delimiter, tag.end())
                if close == -1:
                    raise ValidationError(
                        message=f"Operation {index} has an unterminated dollar-quoted string",
                        field=f"operations[{index}].sql",
                    )
                end = close + len(delimiter)
                out.append(sql[i:end].replace(":", "\\:"))
                i = end
                continue

        if ch == ":":
            out.append("\\:")
            i += 1
            continue

        out.append(ch)
        i += 1

    return "".join(out).strip(), used


def _check_params(params: Sequence[Any], index: int) -> None:
    for position, value in enumerate(params, start=1):
        if value is not None and not isinstance(value, _SCALAR_TYPES):
            raise ValidationError(
                message=(
                    f"Operation {index} parameter ${position} must be a string, "
                    "number, boolean or null"
                ),
                field=f"operations[{index}].params",
            )


# ── Public API ────────────────────────────────────────────────────────────

def parse_statement(
    sql: str,
    params: Optional[Sequence[Any]] = None,
    index: int = 0,
    allowed: Collection[StatementKind] = ALL_KINDS,
) -> ParsedStatement:
    """
    Classify one statement and bind its positional parameters.

    Raises:
        ValidationError:    empty/unterminated text, bad placeholder, non-scalar param
        ForbiddenOperation: keyword outside `allowed`, or more than one statement
    """
    if not isinstance(sql, str) or not sql.strip():
        raise ValidationError(
            message=f"Operation {index} is missing its SQL text",
            field=f"operations[{index}].sql",
        )
    params = list(params or [])
    _check_params(params, index)

    keyword = _leading_keyword(sql, index)
    try:
        kind = StatementKind(keyword)
    except ValueError:
        kind = None

    if kind is None or kind not in allowed:
        allowed_names = ", ".join(k.value for k in StatementKind if k in allowed)
        if keyword:
            message = f"Operation {index} is a '{keyword}' statement; only {allowed_names} are allowed"
        else:
            message = f"Operation {index} does not start with a recognised statement keyword"
        raise ForbiddenOperation(
            message=message,
            operation_index=index,
            keyword=keyword or None,
        )

    rewritten, used = _rewrite(sql, index, len(params))
    bound = {f"p{number}": params[number - 1] for number in sorted(used)}
    return _VARIANTS[kind](index=index, clause=text(rewritten), params=bound)


def parse_batch(
    operations: Iterable[Tuple[str, Optional[Sequence[Any]]]],
    allowed: Collection[StatementKind] = ALL_KINDS,
) -> List[ParsedStatement]:
    """
    Classify every operation of a batch before anything executes.

    The first invalid operation aborts the whole batch.
    """
    parsed = [
        parse_statement(sql, params, index=index, allowed=allowed)
        for index, (sql, params) in enumerate(operations)
    ]
    logger.debug(
        "Classified batch of %d: %s",
        len(parsed),
        ",".join(stmt.kind.value for stmt in parsed),
    )
    return parsed
