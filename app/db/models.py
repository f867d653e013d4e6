"""
Database Models - SQLAlchemy ORM models with strict typing.

The reconciler only needs one table: the CustomerInfo aggregate keyed by
application user id, stored whole as JSONB.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Customer(Base):
    """
    ORM model for customers table.

    ``customer_info`` holds the camelCase JSON form of CustomerInfo.
    """

    __tablename__ = "customers"

    app_user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_info: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<Customer(app_user_id={self.app_user_id})>"
