"""Statement registry and cross-schema reference checks.

Every statement the query façade can run is registered up front together
with the tables it touches, split into tenant-local and shared. Registration
fails fast when a statement names a shared table without the shared-schema
qualifier, hardcodes a schema on a tenant-local table, or touches a table it
did not declare. Unqualified shared references are never caught at query
time: they resolve through the connection's binding and can quietly return
the wrong rows.
"""

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from sqlalchemy import TextClause, text

from src.database.tenant import validate_schema_name
from src.exceptions import (
    HardcodedTenantSchemaException,
    StatementNotRegisteredException,
    StatementRegistrationException,
    UndeclaredTableReferenceException,
    UnqualifiedSharedReferenceException,
)

logger = logging.getLogger(__name__)


class _Token:
    __slots__ = ("type", "value")

    def __init__(self, type_: str, value: str):
        self.type = type_
        self.value = value

    def __repr__(self):
        return f"({self.type}, {self.value!r})"


KEYWORDS = frozenset({
    "ALL", "ALTER", "AND", "ANY", "AS", "ASC", "BETWEEN", "BY", "CASE", "CONFLICT",
    "CREATE", "CROSS", "DELETE", "DESC", "DISTINCT", "DO", "DROP", "ELSE", "END",
    "EXCEPT", "EXISTS", "FETCH", "FOR", "FROM", "FULL", "GROUP", "HAVING", "IF",
    "ILIKE", "IN", "INNER", "INSERT", "INTERSECT", "INTO", "IS", "JOIN", "LATERAL",
    "LEFT", "LIKE", "LIMIT", "LOCKED", "NATURAL", "NOT", "NOTHING", "NOWAIT", "NULL",
    "OF", "OFFSET", "ON", "ONLY", "OR", "ORDER", "OUTER", "OVER", "PARTITION",
    "RECURSIVE", "REFERENCES", "RETURNING", "RIGHT", "SELECT", "SET", "SHARE", "SKIP",
    "SOME", "TABLE", "THEN", "TRUNCATE", "UNION", "UPDATE", "USING", "VALUES", "WHEN",
    "WHERE", "WINDOW", "WITH",
})

# Keywords after which a table name follows
_TABLE_INTRODUCERS = frozenset({"FROM", "JOIN", "INTO", "UPDATE", "USING", "REFERENCES", "TRUNCATE"})
# Keywords that may sit between an introducer and the table name
_TABLE_PREFIXES = frozenset({"ONLY", "LATERAL", "TABLE"})
# First keyword of a parenthesized subquery
_SUBQUERY_STARTS = frozenset({"SELECT", "WITH", "VALUES"})


def tokenize(sql: str) -> list[_Token]:
    """Split SQL into KEYWORD, IDENT, QIDENT, STRING, PARAM and SYMBOL tokens."""
    tokens: list[_Token] = []
    i = 0
    n = len(sql)

    while i < n:
        char = sql[i]

        if char.isspace():
            i += 1
            continue

        # Comments
        if char == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
            continue
        if char == "/" and sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            if end == -1:
                raise ValueError("Unterminated comment")
            i = end + 2
            continue

        # String literals, '' escapes a quote
        if char == "'":
            end = i + 1
            while end < n:
                if sql[end] == "'":
                    if end + 1 < n and sql[end + 1] == "'":
                        end += 2
                        continue
                    break
                end += 1
            if end >= n:
                raise ValueError("Unterminated string")
            tokens.append(_Token("STRING", sql[i : end + 1]))
            i = end + 1
            continue

        # Quoted identifiers keep their case
        if char == '"':
            end = sql.find('"', i + 1)
            if end == -1:
                raise ValueError("Unterminated quoted identifier")
            tokens.append(_Token("QIDENT", sql[i + 1 : end]))
            i = end + 1
            continue

        # Casts (::type) and bind parameters (:name, $1)
        if char == ":" and sql.startswith("::", i):
            i += 2
            while i < n and (sql[i].isalnum() or sql[i] == "_"):
                i += 1
            continue
        if char in ":$" and i + 1 < n and (sql[i + 1].isalnum() or sql[i + 1] == "_"):
            end = i + 1
            while end < n and (sql[end].isalnum() or sql[end] == "_"):
                end += 1
            tokens.append(_Token("PARAM", sql[i:end]))
            i = end
            continue

        # Identifiers / keywords; unquoted names fold to lower case
        if char.isalpha() or char == "_":
            end = i + 1
            while end < n and (sql[end].isalnum() or sql[end] in "_$"):
                end += 1
            word = sql[i:end]
            if word.upper() in KEYWORDS:
                tokens.append(_Token("KEYWORD", word.upper()))
            else:
                tokens.append(_Token("IDENT", word.lower()))
            i = end
            continue

        if char.isdigit():
            end = i + 1
            while end < n and (sql[end].isalnum() or sql[end] == "."):
                end += 1
            tokens.append(_Token("NUMBER", sql[i:end]))
            i = end
            continue

        tokens.append(_Token("SYMBOL", char))
        i += 1

    return tokens


@dataclass(frozen=True)
class TableReference:
    table: str
    schema: str | None = None

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}" if self.schema else self.table


def _is_name(token: _Token | None) -> bool:
    return token is not None and token.type in ("IDENT", "QIDENT")


def _cte_names(tokens: list[_Token]) -> set[str]:
    """Names defined by a leading WITH clause."""
    names: set[str] = set()
    if not tokens or tokens[0].value != "WITH":
        return names
    i = 1
    if i < len(tokens) and tokens[i].value == "RECURSIVE":
        i += 1
    while i < len(tokens) and _is_name(tokens[i]):
        names.add(tokens[i].value)
        i += 1
        # optional column list: name (a, b) AS (...)
        if i < len(tokens) and tokens[i].value == "(":
            i = _skip_parens(tokens, i)
        if i < len(tokens) and tokens[i].value == "AS":
            i += 1
        if i < len(tokens) and tokens[i].value == "(":
            i = _skip_parens(tokens, i)
        if i < len(tokens) and tokens[i].value == ",":
            i += 1
            continue
        break
    return names


def _skip_parens(tokens: list[_Token], i: int) -> int:
    depth = 0
    while i < len(tokens):
        if tokens[i].value == "(":
            depth += 1
        elif tokens[i].value == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise ValueError("Unbalanced parentheses")


def extract_table_references(sql: str) -> list[TableReference]:
    """Return every table a statement reads or writes, in order of appearance.

    Function-call parentheses (``EXTRACT(YEAR FROM ...)``) are not treated as
    table clauses; subqueries are, including ones wrapped in a function-style
    constructor such as ``ARRAY(SELECT ...)``. CTE names are excluded.
    """
    tokens = tokenize(sql)
    ctes = _cte_names(tokens)
    references: list[TableReference] = []
    # True for parentheses that belong to a function call or a column list
    paren_stack: list[bool] = []

    i = 0
    while i < len(tokens):
        token = tokens[i]

        if token.value == "(":
            previous = tokens[i - 1] if i > 0 else None
            following = tokens[i + 1] if i + 1 < len(tokens) else None
            # ARRAY(SELECT ...) and similar wrap a subquery, not call arguments
            subquery = following is not None and following.value in _SUBQUERY_STARTS
            paren_stack.append(_is_name(previous) and not subquery)
            i += 1
            continue
        if token.value == ")":
            if paren_stack:
                paren_stack.pop()
            i += 1
            continue

        in_call = bool(paren_stack) and paren_stack[-1]
        if token.type != "KEYWORD" or token.value not in _TABLE_INTRODUCERS or in_call:
            i += 1
            continue

        i += 1
        while True:
            while i < len(tokens) and tokens[i].value in _TABLE_PREFIXES:
                i += 1
            if not _is_name(tokens[i] if i < len(tokens) else None):
                break
            parts = [tokens[i].value]
            i += 1
            while (
                i + 1 < len(tokens)
                and tokens[i].value == "."
                and _is_name(tokens[i + 1])
            ):
                parts.append(tokens[i + 1].value)
                i += 2
            # a name followed by "(" is a function call, except for column lists
            if i < len(tokens) and tokens[i].value == "(" and token.value not in ("INTO", "REFERENCES"):
                break
            table = parts[-1]
            schema = parts[-2] if len(parts) > 1 else None
            if not (schema is None and table in ctes):
                references.append(TableReference(table=table, schema=schema))

            # FROM a, b  /  FROM a AS x, b y
            if i < len(tokens) and tokens[i].value == "AS":
                i += 1
            if i < len(tokens) and _is_name(tokens[i]):
                i += 1
            if token.value in ("FROM", "USING", "TRUNCATE") and i < len(tokens) and tokens[i].value == ",":
                i += 1
                continue
            break

    return references


@dataclass(frozen=True)
class Statement:
    """A registered, validated statement the query façade may execute."""

    name: str
    sql: str
    tenant_tables: frozenset[str]
    shared_tables: frozenset[str]
    references: tuple[TableReference, ...]
    clause: TextClause = field(compare=False, repr=False)

    @property
    def touches_shared(self) -> bool:
        return bool(self.shared_tables)


class StatementRegistry:
    """Catalogue of every statement business modules are allowed to run."""

    def __init__(self, shared_schema: str, shared_tables: Iterable[str]) -> None:
        self.shared_schema = validate_schema_name(shared_schema).lower()
        self._known_shared = {t.lower() for t in shared_tables}
        self._statements: dict[str, Statement] = {}

    @property
    def known_shared_tables(self) -> frozenset[str]:
        return frozenset(self._known_shared)

    def add_shared_table(self, table: str) -> None:
        """Mark another table as shared master data and re-check existing statements."""
        self._known_shared.add(table.lower())
        self.validate_all()

    def register(
        self,
        name: str,
        sql: str,
        *,
        tenant_tables: Iterable[str] = (),
        shared_tables: Iterable[str] = (),
    ) -> Statement:
        """Validate and register a statement. Raises on the first defect found."""
        statement = self._build(name, sql, tenant_tables, shared_tables)

        existing = self._statements.get(name)
        if existing is not None:
            if existing.sql != statement.sql:
                raise ValueError(f"Statement {name!r} is already registered with different SQL")
            return existing

        self._statements[name] = statement
        logger.debug(
            "Registered statement %s (tenant=%s shared=%s)",
            name,
            sorted(statement.tenant_tables),
            sorted(statement.shared_tables),
        )
        return statement

    def _build(
        self,
        name: str,
        sql: str,
        tenant_tables: Iterable[str],
        shared_tables: Iterable[str],
    ) -> Statement:
        tenant = frozenset(t.lower() for t in tenant_tables)
        shared = frozenset(t.lower() for t in shared_tables)
        all_shared = self._known_shared | shared

        overlap = tenant & all_shared
        if overlap:
            raise StatementRegistrationException(
                f"Statement {name!r} declares shared tables as tenant-local: {sorted(overlap)}",
                details=[{"statement": name, "tables": sorted(overlap)}],
            )

        try:
            references = tuple(extract_table_references(sql))
        except ValueError as exc:
            raise StatementRegistrationException(f"Statement {name!r} could not be parsed: {exc}") from exc

        for ref in references:
            detail = [{"statement": name, "reference": str(ref)}]
            if ref.table in all_shared:
                if ref.schema is None:
                    raise UnqualifiedSharedReferenceException(
                        f"Statement {name!r} references shared table {ref.table!r} without "
                        f"the {self.shared_schema!r} schema qualifier",
                        details=detail,
                    )
                if ref.schema != self.shared_schema:
                    raise UnqualifiedSharedReferenceException(
                        f"Statement {name!r} qualifies shared table {ref.table!r} with "
                        f"{ref.schema!r} instead of {self.shared_schema!r}",
                        details=detail,
                    )
                if ref.table not in shared:
                    raise UndeclaredTableReferenceException(
                        f"Statement {name!r} touches shared table {ref.table!r} without declaring it",
                        details=detail,
                    )
                continue

            if ref.schema is not None:
                if ref.schema == self.shared_schema:
                    raise UndeclaredTableReferenceException(
                        f"Statement {name!r} references {ref} which is not a known shared table",
                        details=detail,
                    )
                raise HardcodedTenantSchemaException(
                    f"Statement {name!r} hardcodes schema {ref.schema!r} on tenant table {ref.table!r}",
                    details=detail,
                )
            if ref.table not in tenant:
                raise UndeclaredTableReferenceException(
                    f"Statement {name!r} touches tenant table {ref.table!r} without declaring it",
                    details=detail,
                )

        return Statement(
            name=name,
            sql=sql,
            tenant_tables=tenant,
            shared_tables=shared,
            references=references,
            clause=text(sql),
        )

    def validate_all(self) -> int:
        """Re-check every registered statement against the current shared-table set."""
        for statement in self._statements.values():
            self._build(statement.name, statement.sql, statement.tenant_tables, statement.shared_tables)
        return len(self._statements)

    def get(self, name: str) -> Statement:
        try:
            return self._statements[name]
        except KeyError:
            raise StatementNotRegisteredException(f"Statement {name!r} is not registered") from None

    def owns(self, statement: Statement) -> bool:
        return self._statements.get(statement.name) is statement

    def shared_lookup(self, table: str) -> Statement:
        """The canonical by-id lookup for a shared master-data table."""
        table = table.lower()
        if table not in self._known_shared:
            raise UndeclaredTableReferenceException(f"{table!r} is not a known shared table")
        validate_schema_name(table)
        return self.register(
            f"shared.{table}.by_id",
            f"SELECT * FROM {self.shared_schema}.{table} WHERE id = :id",
            shared_tables=[table],
        )

    def names(self) -> list[str]:
        return sorted(self._statements)

    def __len__(self) -> int:
        return len(self._statements)

    def __iter__(self) -> Iterator[Statement]:
        return iter(self._statements.values())

    def __contains__(self, name: str) -> bool:
        return name in self._statements
