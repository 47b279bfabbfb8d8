# postgis_tools/core/sql.py
"""Identifier handling for SQL generated at runtime.

Identifiers cannot be bound as parameters, so every schema, table and column
name that ends up in a statement goes through :func:`quote_identifier`.
Values (lengths, SRIDs, limits) must be validated as ``int`` before they are
formatted into SQL.
"""
import re

_BARE_WORD = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def quote_identifier(identifier: str) -> str:
    """Wrap in double quotes, doubling any embedded double quote"""
    return '"' + identifier.replace('"', '""') + '"'


def qualified_name(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def is_bare_word(value: str) -> bool:
    """True for keyword-like tokens such as PostGIS geometry type names"""
    return bool(value) and _BARE_WORD.match(value) is not None
