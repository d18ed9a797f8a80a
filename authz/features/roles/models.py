"""
Role and UserRole models.

A role is global when both organization columns are NULL and scoped to one
organization instance when both are set. UserRole carries a denormalized copy
of the role's organization columns so membership queries need no join.
"""
import enum
from typing import List
from sqlalchemy import JSON, CheckConstraint, Enum as SQLEnum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from authz.core.database.base import Base, TimestampMixin, generate_ulid


class RoleType(str, enum.Enum):
    """BASIC and ADMIN are created by the system and protected from most edits."""
    BASIC = "basic"
    ADMIN = "admin"
    CUSTOM = "custom"


PROTECTED_ROLE_TYPES = (RoleType.BASIC, RoleType.ADMIN)


class Role(Base, TimestampMixin):
    __tablename__ = "roles"
    __table_args__ = (
        CheckConstraint(
            "(organization_kind IS NULL AND organization_id IS NULL) OR "
            "(organization_kind IS NOT NULL AND organization_id IS NOT NULL)",
            name="ck_roles_scope_pairing",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(26), unique=True, nullable=False, index=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[RoleType] = mapped_column(
        SQLEnum(RoleType),
        default=RoleType.CUSTOM,
        nullable=False,
    )

    # Permission keys, wildcards allowed
    permissions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Higher is more powerful
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    organization_kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    user_roles: Mapped[list["UserRole"]] = relationship(
        "UserRole",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_global(self) -> bool:
        return self.organization_kind is None

    def __repr__(self) -> str:
        return (
            f"<Role(id={self.id}, name={self.name!r}, type={self.type}, order={self.order}, "
            f"kind={self.organization_kind}, org_id={self.organization_id})>"
        )


class UserRole(Base, TimestampMixin):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Denormalized from the role
    organization_kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    role: Mapped["Role"] = relationship("Role", back_populates="user_roles", lazy="selectin")

    def __repr__(self) -> str:
        return f"<UserRole(user_id={self.user_id}, role_id={self.role_id})>"
