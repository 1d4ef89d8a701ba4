"""
Database Base Classes and Common Utilities

Foundation for the catalog models.

Key Concepts:
--------------
1. DeclarativeBase: SQLAlchemy's base class that enables ORM functionality
2. TimestampMixin: created_at / updated_at columns shared by every table
3. orm_registry: Central registry that tracks all models and their metadata

Catalog tables use the caller's string identifiers as primary keys
(document ids, content unit ids, ``{unit}:{index}`` chunk ids), so the
mixin deliberately carries no surrogate integer id.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, MetaData, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, registry


# ================================
# Naming Convention for Constraints
# ================================
# Consistent constraint names keep migrations diffable:
# - ix_chunks_content_unit_id: Index on 'chunks.content_unit_id'
# - fk_chunks_content_unit_id_content_units: Foreign key to 'content_units'
convention = {
    "ix": "ix_%(column_0_label)s",  # Index
    "uq": "uq_%(table_name)s_%(column_0_name)s",  # Unique constraint
    "ck": "ck_%(table_name)s_%(constraint_name)s",  # Check constraint
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",  # Foreign key
    "pk": "pk_%(table_name)s",  # Primary key
}

metadata = MetaData(naming_convention=convention)

orm_registry = registry(metadata=metadata)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ================================
# Base DeclarativeBase Class
# ================================
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        class DocumentRecord(Base, TimestampMixin):
            __tablename__ = "documents"
            id: Mapped[str] = mapped_column(String255, primary_key=True)
    """

    registry = orm_registry
    metadata = metadata

    __tablename__: str


# ================================
# Timestamp Mixin
# ================================
class TimestampMixin:
    """
    Adds timezone-aware UTC ``created_at`` / ``updated_at`` columns.

    Always store in UTC, convert in the application layer.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Timestamp when record was created (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp when record was last updated (UTC)"
    )


# ================================
# String Length Constraints
# ================================
String20 = String(20)  # Example: status values
String64 = String(64)  # Example: sha256 hex digests
String255 = String(255)  # Example: identifiers, titles, model names
