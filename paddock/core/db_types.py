"""
Dialect-aware column types.
"""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator


class KeyList(TypeDecorator):
    """
    Ordered list of string keys.

    Stored as JSONB on PostgreSQL and JSON elsewhere. NULL loads as an empty
    list so callers can iterate without guarding.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return []
        return [str(v) for v in value]

    def process_result_value(self, value, dialect):
        if not value:
            return []
        return list(value)
