"""
User model with ULID primary keys.
"""
from datetime import datetime
from typing import Any, Dict, List
from sqlalchemy import JSON, Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from authz.core.database.base import Base, TimestampMixin, generate_ulid


class User(Base, TimestampMixin):
    """
    User model representing authenticated users.

    The three JSON columns are derived snapshots written only by the claims
    and memberships services. NULL means "must recompute".
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Cached projections
    claims: Mapped[Dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    roles: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    memberships: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSON(none_as_null=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r})>"
