import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from authz.context import create_context
from authz.core.cache import MemoryCache
from authz.core.database.engine import build_engine, build_sessionmaker, get_db, init_db
from authz.features.organizations.schemas import CompanyCreate
from authz.features.roles.models import RoleType
from tests.factories import World, company_roles, give_role, make_user


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'authz.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def context():
    return create_context(cache=MemoryCache(), bypass=False)


@pytest_asyncio.fixture
async def world(db, context) -> World:
    """
    Global default roles, a system owner and one company.

    root holds the global ADMIN role and the system owner record, alice owns
    acme, bob is a BASIC member of acme and carol belongs to no organization.
    Everyone but root holds the global BASIC role.
    """
    created = {role.type: role for role in await context.roles.ensure_global_default_roles(db)}

    root = await make_user(db, "root@example.com", "Root")
    alice = await make_user(db, "alice@example.com", "Alice")
    bob = await make_user(db, "bob@example.com", "Bob")
    carol = await make_user(db, "carol@example.com", "Carol")

    await give_role(db, root, created[RoleType.ADMIN])
    for user in (alice, bob, carol):
        await give_role(db, user, created[RoleType.BASIC])
    await context.admin.set_system_owner(db, root.id)

    acme = await context.organizations.create_company(db, CompanyCreate(name="Acme"), alice.id)
    acme_roles = await company_roles(db, acme)
    await context.organizations.add_member(
        db, "company", acme.uuid, bob.id, [acme_roles[RoleType.BASIC].uuid], alice.id
    )
    await db.commit()
    # Detached, so a rollback inside a test cannot expire them
    db.expunge_all()

    return World(
        root=root,
        alice=alice,
        bob=bob,
        carol=carol,
        user_role=created[RoleType.BASIC],
        admin_role=created[RoleType.ADMIN],
        acme=acme,
        acme_roles=acme_roles,
    )


@pytest_asyncio.fixture
async def client(session_factory, context):
    from authz.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.authz = context
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()
    app.state.authz = None
