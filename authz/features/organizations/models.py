"""
Company models, the organization kind shipped with the engine.

Companies have an integer primary key used by roles and grants internally and
a ULID exposed to clients.
"""
from datetime import datetime
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from authz.core.database.base import Base, TimestampMixin, generate_ulid


class Company(Base, TimestampMixin):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(26), unique=True, nullable=False, index=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    logo_src: Mapped[str | None] = mapped_column(String(500), nullable=True)

    owner_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    members_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Company(id={self.id}, uuid={self.uuid}, name={self.name!r})>"


class CompanyMember(Base, TimestampMixin):
    """
    Membership of a user in a company.

    Removal is a soft delete; re-adding the user restores the row.
    """
    __tablename__ = "company_members"
    __table_args__ = (UniqueConstraint("user_id", "company_id", name="uq_company_members_user_company"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    company_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Recomputed from role types after every role change
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CompanyMember(user_id={self.user_id}, company_id={self.company_id}, admin={self.is_admin})>"
