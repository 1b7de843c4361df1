"""Statement analysis for operator-authored tag SQL.

Every dialect gets the same safety classification: exactly one statement, which
must be a read-only ``SELECT`` (optionally behind a CTE list). SQL Server
statements are additionally parsed into the subset the probe rewriter supports:

* optional leading ``WITH name [(cols)] AS (...)[, ...]`` CTE list
* one or more ``SELECT`` blocks joined by ``UNION [ALL]``, ``EXCEPT`` or ``INTERSECT``
* ``ALL``/``DISTINCT`` and ``TOP n``/``TOP (n)`` ``[PERCENT] [WITH TIES]`` modifiers
* ``FROM``/``JOIN``/``WHERE``/``GROUP BY``/``HAVING`` and a final ``ORDER BY``
  (with optional ``OFFSET ... FETCH``)
* every projected column of the first block must have a name

Temp tables, variables, query hints, ``FOR XML``/``FOR JSON``/``FOR BROWSE``,
``COMPUTE``, ``EXEC`` and ``OPENQUERY``/``OPENROWSET`` are outside the subset.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Token

from connectors.sql.dialects import DialectId
from connectors.sql.exceptions import DisallowedStatementKind, UnsupportedQueryShape

_WRITE_VERBS = {"INSERT", "UPDATE", "DELETE", "MERGE", "CREATE", "CREATE OR REPLACE", "DROP", "ALTER", "TRUNCATE"}
_TSQL_UNSUPPORTED_WORDS = {
    "COMPUTE",
    "EXEC",
    "EXECUTE",
    "DECLARE",
    "GO",
    "OPENQUERY",
    "OPENROWSET",
    "OPENDATASOURCE",
    "OPENXML",
}
_SET_OPERATORS = {"UNION", "UNION ALL", "EXCEPT", "INTERSECT"}
_SELECT_LIST_END = {"FROM", "INTO", "WHERE", "GROUP BY", "HAVING", "ORDER BY", "OPTION", "FOR"} | _SET_OPERATORS
_UNNAMED_KEYWORDS = {"NULL", "CASE", "END", "TRUE", "FALSE", "DEFAULT"}
# same lookbehind SQLAlchemy text() uses to find :name bind parameters
_BIND_LIKE = re.compile(r"(?<![:\w\\]):(?=\w)")


@dataclass(frozen=True)
class ParsedSelect:
    """A SELECT split into the parts needed to wrap it in a derived table.

    ``cte`` must stay at the front of any statement built around ``body``
    because SQL Server does not allow CTEs inside derived tables.
    """

    cte: str
    body: str
    order_by: str = ""


def analyze(sql: str, dialect: DialectId) -> ParsedSelect:
    tokens = _single_statement_tokens(sql)
    _check_read_only(tokens)
    if dialect is DialectId.SQLSERVER:
        return _parse_tsql(tokens)
    return ParsedSelect(cte="", body=_text(_strip_terminator(tokens)).strip())


def _single_statement_tokens(sql: str) -> List[Token]:
    statements = [statement for statement in sqlparse.parse(sql) if statement.token_first(skip_cm=True) is not None]
    if not statements:
        raise UnsupportedQueryShape("Empty SQL statement")
    if len(statements) > 1:
        raise UnsupportedQueryShape(f"Expected a single statement, found {len(statements)}")
    return list(statements[0].flatten())


def _check_read_only(tokens: Sequence[Token]) -> None:
    significant = _significant(tokens)
    if not significant:
        raise UnsupportedQueryShape("Empty SQL statement")
    first = _word(significant[0])
    if first not in {"SELECT", "WITH"}:
        raise DisallowedStatementKind(f"Only SELECT statements can be synced, got {significant[0].value!r}")

    depth = 0
    for token in significant:
        if token.match(T.Punctuation, "("):
            depth += 1
        elif token.match(T.Punctuation, ")"):
            depth -= 1
        elif token.ttype in T.Keyword.DML or token.ttype in T.Keyword.DDL:
            verb = _word(token)
            if verb in _WRITE_VERBS:
                raise DisallowedStatementKind(f"Statement contains {verb}, only read-only SELECTs are allowed")
        elif depth == 0 and _word(token) == "INTO":
            raise DisallowedStatementKind("SELECT ... INTO writes data and cannot be synced")


def _parse_tsql(tokens: Sequence[Token]) -> ParsedSelect:
    significant = _significant(tokens)
    _check_tsql_words(significant)

    depth = 0
    body_start: Optional[Token] = None
    order_start: Optional[Token] = None
    set_operator = False
    in_cte = _word(significant[0]) == "WITH"

    for index, token in enumerate(significant):
        if token.match(T.Punctuation, "("):
            depth += 1
            continue
        if token.match(T.Punctuation, ")"):
            depth -= 1
            if depth < 0:
                raise UnsupportedQueryShape("Unbalanced parentheses")
            continue
        if depth != 0:
            continue
        word = _word(token)
        if in_cte:
            if index == 0:
                continue
            if word == "SELECT":
                in_cte = False
                body_start = token
            elif not (word == "AS" or token.match(T.Punctuation, ",") or _is_name(token)):
                raise UnsupportedQueryShape(f"Unexpected {token.value!r} in CTE list")
            continue
        if body_start is None:
            if word != "SELECT":
                raise UnsupportedQueryShape(f"Expected SELECT, got {token.value!r}")
            body_start = token
            continue
        if order_start is not None:
            continue
        if word in _SET_OPERATORS:
            set_operator = True
            following = significant[index + 1] if index + 1 < len(significant) else None
            if following is None or not (_word(following) == "SELECT" or following.match(T.Punctuation, "(")):
                raise UnsupportedQueryShape(f"Expected SELECT after {word}")
        elif word == "ORDER BY":
            order_start = token
        elif word == "OPTION":
            raise UnsupportedQueryShape("Query hints (OPTION) are not supported")
        elif word == "FOR":
            following = significant[index + 1] if index + 1 < len(significant) else None
            if following is not None and _word(following) in {"XML", "JSON", "BROWSE"}:
                raise UnsupportedQueryShape(f"FOR {_word(following)} clauses are not supported")
        elif token.match(T.Punctuation, ";") and index != len(significant) - 1:
            raise UnsupportedQueryShape("Expected a single statement")

    if depth != 0:
        raise UnsupportedQueryShape("Unbalanced parentheses")
    if body_start is None:
        raise UnsupportedQueryShape("No SELECT found")

    _check_projection_names(significant[significant.index(body_start) :])

    all_tokens = list(_strip_terminator(tokens))
    body_index = _index_of(all_tokens, body_start)
    cte = _text(all_tokens[:body_index]).strip()
    if order_start is None:
        return ParsedSelect(cte=cte, body=_text(all_tokens[body_index:]).strip())

    order_index = _index_of(all_tokens, order_start)
    body_tokens = all_tokens[body_index:order_index]
    order_tokens = all_tokens[order_index:]
    order_by = _text(order_tokens).strip()
    # ORDER BY inside a derived table is only legal alongside TOP or OFFSET.
    keeps_order = not set_operator and (_has_top(body_tokens) or any(_word(token) == "OFFSET" for token in order_tokens))
    if keeps_order:
        return ParsedSelect(cte=cte, body=_text(all_tokens[body_index:]).strip(), order_by=order_by)
    return ParsedSelect(cte=cte, body=_text(body_tokens).strip(), order_by=order_by)


def _check_tsql_words(significant: Sequence[Token]) -> None:
    for token in significant:
        value = token.value
        if token.ttype in T.Name and value[:1] in {"#", "@"}:
            kind = "Temp tables" if value.startswith("#") else "Variables"
            raise UnsupportedQueryShape(f"{kind} are not supported ({value})")
        if token.ttype in T.Operator and value.startswith("@"):
            raise UnsupportedQueryShape(f"Variables are not supported ({value})")
        word = _word(token)
        if word in _TSQL_UNSUPPORTED_WORDS:
            raise UnsupportedQueryShape(f"{word} is not supported in tag queries")


def _check_projection_names(block: Sequence[Token]) -> None:
    index = 1
    if index < len(block) and _word(block[index]) in {"ALL", "DISTINCT"}:
        index += 1
    if index < len(block) and _word(block[index]) == "TOP":
        index += 1
        if index < len(block) and block[index].match(T.Punctuation, "("):
            index = _skip_group(block, index)
        else:
            index += 1
        if index < len(block) and _word(block[index]) == "PERCENT":
            index += 1
        if index + 1 < len(block) and _word(block[index]) == "WITH" and _word(block[index + 1]) == "TIES":
            index += 2

    items: List[List[Token]] = [[]]
    depth = 0
    for token in block[index:]:
        if depth == 0 and (_word(token) in _SELECT_LIST_END or token.match(T.Punctuation, ";")):
            break
        if token.match(T.Punctuation, "("):
            depth += 1
        elif token.match(T.Punctuation, ")"):
            depth -= 1
        if depth == 0 and token.match(T.Punctuation, ","):
            items.append([])
            continue
        items[-1].append(token)

    for position, item in enumerate(items, start=1):
        if not item:
            raise UnsupportedQueryShape(f"Empty projection at column {position}")
        if not _is_named_projection(item):
            text = " ".join(token.value for token in item)
            raise UnsupportedQueryShape(f"Column {position} ({text}) needs an alias")


def _is_named_projection(item: Sequence[Token]) -> bool:
    last = item[-1]
    if last.ttype in T.Wildcard:
        return True
    depth = 0
    for token in item:
        if token.match(T.Punctuation, "("):
            depth += 1
        elif token.match(T.Punctuation, ")"):
            depth -= 1
        elif depth == 0 and _word(token) == "AS":
            return True
    if len(item) >= 2 and _is_name(item[0]) and item[1].ttype in T.Operator.Comparison and item[1].value == "=":
        return True
    if all(_is_name(token) or token.match(T.Punctuation, ".") for token in item):
        return _is_name(last)
    if len(item) >= 2 and _is_name(last):
        previous = item[-2]
        return not (previous.match(T.Punctuation, ".") or previous.ttype in T.Operator)
    return False


def _has_top(body_tokens: Sequence[Token]) -> bool:
    return any(_word(token) == "TOP" for token in _significant(body_tokens)[:3])


def _skip_group(block: Sequence[Token], index: int) -> int:
    depth = 0
    while index < len(block):
        if block[index].match(T.Punctuation, "("):
            depth += 1
        elif block[index].match(T.Punctuation, ")"):
            depth -= 1
            if depth == 0:
                return index + 1
        index += 1
    raise UnsupportedQueryShape("Unbalanced parentheses")


def _significant(tokens: Sequence[Token]) -> List[Token]:
    return [token for token in tokens if not token.is_whitespace and token.ttype not in T.Comment]


def _strip_terminator(tokens: Sequence[Token]) -> List[Token]:
    result = list(tokens)
    while result and (result[-1].is_whitespace or result[-1].ttype in T.Comment or result[-1].match(T.Punctuation, ";")):
        result.pop()
    return result


def _text(tokens: Sequence[Token]) -> str:
    parts: List[str] = []
    for token in tokens:
        if token.ttype in T.Comment.Single:
            parts.append("\n")
        elif token.ttype in T.Comment:
            parts.append(" ")
        else:
            parts.append(token.value)
    return "".join(parts)


def _index_of(tokens: Sequence[Token], target: Token) -> int:
    for index, token in enumerate(tokens):
        if token is target:
            return index
    raise ValueError("token not found")


def _word(token: Token) -> Optional[str]:
    if token.ttype in T.Keyword or (token.ttype in T.Name and token.value[:1] not in {"[", "`", '"'}):
        return " ".join(token.value.upper().split())
    return None


def _is_name(token: Token) -> bool:
    if token.ttype in T.Name or token.ttype in T.String.Symbol:
        return not token.value.startswith((":", "?", "$", "%"))
    return token.ttype in T.Keyword and _word(token) not in _UNNAMED_KEYWORDS | {"AS"}


def escape_binds(sql: str) -> str:
    """Escape ``:word`` sequences so operator SQL survives ``sqlalchemy.text()`` verbatim."""
    return _BIND_LIKE.sub(r"\\:", sql)
