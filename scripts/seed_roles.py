"""
Seed script for the global default roles and the system owner.

Creates the global "User" and "System Owner" roles when missing. When an
owner email is given, the user is created if needed, receives the global
ADMIN role and is recorded as the system owner.

Usage:
    python -m scripts.seed_roles
    python -m scripts.seed_roles owner@example.com "Owner Name"
"""
import asyncio
import sys
from typing import Optional
from sqlalchemy import select

from authz.context import create_context
from authz.core.database.engine import AsyncSessionLocal, init_db
from authz.errors import ConflictError
from authz.features.roles.models import RoleType
from authz.features.users.auth import create_access_token
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)


async def seed(owner_email: Optional[str] = None, owner_name: Optional[str] = None) -> None:
    # Seeding runs before anyone holds a permission
    context = create_context(bypass=True)

    async with AsyncSessionLocal() as db:
        created = await context.roles.ensure_global_default_roles(db)
        log.info(f"Global default roles created: {[role.name for role in created] or 'none'}")

        if not owner_email:
            return

        result = await db.execute(select(User).where(User.email == owner_email))
        owner = result.scalar_one_or_none()
        if owner is None:
            owner = User(email=owner_email, name=owner_name or owner_email.split("@")[0])
            db.add(owner)
            await db.commit()
            log.info(f"Created owner user {owner.id}")

        admin_role = await context.roles.get_global_role(db, RoleType.ADMIN)
        try:
            await context.assignments.assign_role(db, admin_role.uuid, owner.id, owner.id)
        except ConflictError:
            log.info("Owner already holds the global admin role")

        await context.admin.set_system_owner(db, owner.id)
        log.info(f"System owner: {owner.email} ({owner.id})")
        log.info(f"Access token (1h): {create_access_token(owner.id)}")


async def main():
    log.info("Starting role seeding...")
    await init_db()
    args = sys.argv[1:]
    await seed(args[0] if args else None, args[1] if len(args) > 1 else None)
    log.info("Role seeding completed successfully!")


if __name__ == "__main__":
    asyncio.run(main())
