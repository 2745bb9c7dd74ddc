"""
Test fixtures - in-memory SQLite database, seeded entities + authenticated HTTP client
"""
from datetime import date

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from backend.database import Base, get_db
from backend.main import app
from backend.models.user import User, UserRole, UserStatus
from backend.models.branch import Branch
from backend.models.bck import BCK
from backend.models.supplier import Supplier
from backend.models.template import AuditTemplate
from backend.models.audit import Audit, AuditStatus
from backend.utils.helpers import utcnow
from backend.tests.factories import TEST_CHECKLIST, TEST_SCORING


@pytest_asyncio.fixture()
async def session_factory():
    """One shared in-memory SQLite database per test"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def seed_data(db_session):
    """Insert baseline test data: users, one branch, one BCK, one supplier, one template"""
    auditor = User(email="auditor@test.com", full_name="Test Auditor", role=UserRole.AUDITOR)
    manager = User(email="qa.lead@test.com", full_name="QA Lead", role=UserRole.AUDIT_MANAGER)
    manager2 = User(email="qa.deputy@test.com", full_name="QA Deputy", role=UserRole.AUDIT_MANAGER)
    former = User(
        email="former@test.com", full_name="Former Manager",
        role=UserRole.AUDIT_MANAGER, status=UserStatus.INACTIVE,
    )
    branch_manager = User(email="branch@test.com", full_name="Branch Manager", role=UserRole.BRANCH_MANAGER)
    bck_manager = User(email="bck@test.com", full_name="Kitchen Manager", role=UserRole.BCK_MANAGER)
    db_session.add_all([auditor, manager, manager2, former, branch_manager, bck_manager])
    await db_session.flush()

    branch = Branch(code="BR-001", name="Olaya Branch", city="Riyadh", manager_id=branch_manager.id)
    bck = BCK(code="BCK-001", name="Central Kitchen", city="Riyadh", manager_id=bck_manager.id)
    supplier = Supplier(
        supplier_code="SUP-001",
        name="Fresh Farms",
        certifications=[{"name": "HACCP", "expiry": "2027-01-01"}],
        quality_score=80,
    )
    supplier.supplied_bcks = [bck]
    template = AuditTemplate(
        name="Test Checklist",
        code="TPL-TEST",
        entity_type="branch",
        checklist=TEST_CHECKLIST,
        scoring_config=TEST_SCORING,
    )
    db_session.add_all([branch, bck, supplier, template])
    await db_session.commit()

    return {
        "auditor": auditor,
        "manager": manager,
        "manager2": manager2,
        "former": former,
        "branch_manager": branch_manager,
        "bck_manager": bck_manager,
        "branch": branch,
        "bck": bck,
        "supplier": supplier,
        "template": template,
    }


@pytest_asyncio.fixture()
async def make_audit(db_session, seed_data):
    """Factory for audits against the test template"""
    counter = {"n": 0}

    async def _make(
        entity_type="branch",
        entity_id=None,
        status=AuditStatus.SCHEDULED,
        scheduled_date=None,
        score=None,
        completed_at=None,
    ):
        counter["n"] += 1
        if entity_id is None:
            entity_id = seed_data[entity_type].id
        audit = Audit(
            audit_code=f"AUD-TEST-{counter['n']:03d}",
            template_id=seed_data["template"].id,
            entity_type=entity_type,
            entity_id=entity_id,
            auditor_id=seed_data["auditor"].id,
            scheduled_date=scheduled_date or date.today(),
            status=status,
            score=score,
            completed_at=completed_at,
            updated_at=completed_at or utcnow(),
        )
        db_session.add(audit)
        await db_session.commit()
        return audit

    return _make


@pytest_asyncio.fixture()
async def client(db_session, seed_data):
    """Authenticated httpx AsyncClient bound to the FastAPI app"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        ac.headers["X-User-Id"] = str(seed_data["manager"].id)
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauth_client(db_session):
    """Unauthenticated httpx AsyncClient"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac

    app.dependency_overrides.clear()
