# ============================================================================
# MODULE CONTEXT - FEATURE SERVER REQUEST VALIDATION
# ============================================================================
# STATUS: Core - SQL injection defense for every client-supplied fragment
# PURPOSE: Validate WHERE clauses, column names/lists, order-by lists, table tokens
# EXPORTS: ValidationResult, validate_where_clause, validate_column_name,
#          validate_column_list, is_valid_table_name, sanitize_order_by
# DEPENDENCIES: sqlparse, re, dataclasses
# PATTERNS: Pure functions, fail-closed validation
# ENTRY_POINTS: Called by FeatureQueryBuilder before any SQL text is produced
# ============================================================================

"""
Request Validation

Every fragment a client can place into SQL passes through here first.

WHERE clauses get two layers of checks:
    1. A whole-word, case-insensitive deny list of write/DDL keywords.
    2. A lexical check with sqlparse: the fragment is embedded into
       ``SELECT * FROM t WHERE <fragment>`` and the token stream must
       describe exactly one SELECT whose WHERE group runs to the end, with
       no comments, statement separators, lexer errors, unbalanced
       parentheses or nested statements.

Identifiers (columns, order-by entries, table tokens) are checked with
strict regular expressions and never quoted or escaped.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Where

from util_logger import LoggerFactory, ComponentType
from .exceptions import InvalidParameterError

logger = LoggerFactory.create_logger(ComponentType.VALIDATOR, "RequestValidator")

DANGEROUS_KEYWORDS = re.compile(
    r"\b(DROP|CREATE|ALTER|TRUNCATE|INSERT|UPDATE|DELETE|UNION|EXEC|GRANT|REVOKE)\b",
    re.IGNORECASE,
)
COLUMN_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
TABLE_NAME = re.compile(r"[A-Za-z0-9_]+(\.[A-Za-z0-9_]+){1,2}")
ORDER_BY_ENTRY = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)(?:\s+(ASC|DESC))?", re.IGNORECASE)

# Wrapper used to lex a bare predicate as a complete statement
_WRAPPER_PREFIX = "SELECT * FROM t WHERE "


@dataclass
class ValidationResult:
    """Outcome of a validation check."""
    valid: bool
    error: Optional[str] = None
    fields: List[str] = field(default_factory=list)


def validate_where_clause(where) -> ValidationResult:
    """
    Validate a client-supplied WHERE predicate.

    Args:
        where: Predicate text as received on the wire

    Returns:
        ValidationResult with valid=False and a reason when rejected
    """
    if not isinstance(where, str) or not where.strip():
        return ValidationResult(False, "WHERE clause must be a non-empty string")

    match = DANGEROUS_KEYWORDS.search(where)
    if match:
        return ValidationResult(False, f"WHERE clause contains forbidden keyword: {match.group(1).upper()}")

    statements = [s for s in sqlparse.parse(_WRAPPER_PREFIX + where) if str(s).strip()]
    if len(statements) != 1:
        return ValidationResult(False, "WHERE clause must not contain multiple statements")

    statement = statements[0]
    if statement.get_type() != "SELECT":
        return ValidationResult(False, "WHERE clause is not a valid predicate")

    depth = 0
    statement_keywords = 0
    for token in statement.flatten():
        if token.ttype in T.Error:
            return ValidationResult(False, "WHERE clause contains unterminated or invalid tokens")
        if token.ttype in T.Comment:
            return ValidationResult(False, "WHERE clause must not contain comments")
        if token.ttype in T.Punctuation:
            if token.value == ";":
                return ValidationResult(False, "WHERE clause must not contain statement separators")
            if token.value == "(":
                depth += 1
            elif token.value == ")":
                depth -= 1
                if depth < 0:
                    return ValidationResult(False, "WHERE clause has unbalanced parentheses")
        if token.ttype in T.Keyword.DML or token.ttype in T.Keyword.DDL:
            statement_keywords += 1

    if depth != 0:
        return ValidationResult(False, "WHERE clause has unbalanced parentheses")

    # The wrapper contributes the only SELECT; anything else is a subquery
    if statement_keywords > 1:
        return ValidationResult(False, "WHERE clause must not contain subqueries")

    where_index = None
    for index, token in enumerate(statement.tokens):
        if isinstance(token, Where):
            where_index = index
            break
    if where_index is None:
        return ValidationResult(False, "WHERE clause is not a valid predicate")

    trailing = [t for t in statement.tokens[where_index + 1:] if not t.is_whitespace]
    if trailing:
        return ValidationResult(
            False,
            f"WHERE clause must not contain trailing clauses: {str(trailing[0]).strip()}"
        )

    return ValidationResult(True)


def validate_column_name(name) -> ValidationResult:
    """Accept a single bare column identifier."""
    if not isinstance(name, str):
        return ValidationResult(False, "Column name must be a string")
    candidate = name.strip()
    if not COLUMN_NAME.fullmatch(candidate):
        return ValidationResult(False, f"Invalid column name: {candidate!r}")
    return ValidationResult(True, fields=[candidate])


def validate_column_list(text) -> ValidationResult:
    """
    Validate a comma-separated column list (all-or-nothing).

    Empty entries are dropped; a list with no remaining entries is invalid.
    """
    if not isinstance(text, str):
        return ValidationResult(False, "Column list must be a string")

    columns = [c.strip() for c in text.split(",") if c.strip()]
    if not columns:
        return ValidationResult(False, "Column list is empty")

    for column in columns:
        result = validate_column_name(column)
        if not result.valid:
            return ValidationResult(False, result.error)

    return ValidationResult(True, fields=columns)


def is_valid_table_name(token) -> bool:
    """``catalog.schema.table`` or ``schema.table``, validated as one token."""
    return isinstance(token, str) and bool(TABLE_NAME.fullmatch(token))


def sanitize_order_by(text) -> str:
    """
    Normalize an orderByFields value.

    Each comma-separated entry must be ``<column> [ASC|DESC]``; directions
    are upper-cased and empty trailing entries are dropped.

    Raises:
        InvalidParameterError: If any entry is malformed or nothing remains
    """
    if not isinstance(text, str):
        raise InvalidParameterError("orderByFields", "orderByFields must be a string")

    entries = [e.strip() for e in text.split(",")]
    while entries and not entries[-1]:
        entries.pop()
    if not entries:
        raise InvalidParameterError("orderByFields", "orderByFields is empty")

    normalized = []
    for entry in entries:
        match = ORDER_BY_ENTRY.fullmatch(entry)
        if not match:
            logger.warning(f"Rejected orderByFields entry: {entry!r}")
            raise InvalidParameterError("orderByFields", f"Invalid orderByFields entry: {entry!r}")
        column, direction = match.group(1), match.group(2)
        normalized.append(f"{column} {direction.upper()}" if direction else column)

    return ", ".join(normalized)
