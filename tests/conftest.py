"""
tests/conftest.py
Shared fixtures: a throwaway SQLite file database, fakeredis, a scripted
code channel and a controllable clock, plus seeded customers, a plumbing
service and professionals around central Bangalore.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="field-dispatch-tests-")

# Settings are read at import time, so the environment must be ready first
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key"
os.environ["APP_ENV"] = "test"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["DISPATCH_MODE"] = "broadcast"
os.environ["PENDING_NO_MATCH_POLICY"] = "keep"

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Awaitable, Callable, List, Optional  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from config.database import AsyncSessionLocal, Base, engine, get_session_factory, init_db, transaction  # noqa: E402
from config.redis_client import RedisCache, get_redis  # noqa: E402
from config.settings import settings  # noqa: E402
from services.booking.service import BookingService  # noqa: E402
from services.verification.channel import CodeChannel, get_code_channel  # noqa: E402
from shared.models.models import Customer, Professional, Service, ServiceCategory  # noqa: E402
from shared.utils.clock import get_clock  # noqa: E402
from shared.utils.security import create_access_token  # noqa: E402

# Job site used throughout: MG Road, Bangalore
SITE = (12.9716, 77.5946)
# Koramangala, ~5.18 km from SITE (ETA 10 min at 30 km/h)
NEAR = (12.9352, 77.6245)
# Whitefield, ~16 km from SITE
FAR = (12.9698, 77.7500)


# ── Test doubles ──────────────────────────────────────────────

class FakeCodeChannel(CodeChannel):
    """Scripted one-time-code channel. `code` is what the customer would read out."""

    def __init__(self, code: str = "482913"):
        self.code = code
        self.sent: List[str] = []
        self.checked: List[tuple] = []
        self.send_error: Optional[BaseException] = None
        # Awaited mid-send, before the session id is handed back
        self.during_send: Optional[Callable[[], Awaitable[None]]] = None

    async def send(self, phone: str) -> str:
        if self.during_send:
            await self.during_send()
        if self.send_error:
            raise self.send_error
        self.sent.append(phone)
        return f"VE{len(self.sent):04d}"

    async def check(self, phone: str, code: str) -> bool:
        self.checked.append((phone, code))
        return code == self.code


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def auth_headers(subject, role: str) -> dict:
    """Bearer header for a customer/professional model (or a bare id) acting as `role`."""
    subject_id = getattr(subject, "id", subject)
    token, _ = create_access_token(str(subject_id), role)
    return {"Authorization": f"Bearer {token}"}


def scheduled_in(clock: MutableClock, hours: int = 2) -> datetime:
    return clock() + timedelta(hours=hours)


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def database():
    await init_db(engine)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory():
    return AsyncSessionLocal


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def channel() -> FakeCodeChannel:
    return FakeCodeChannel()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def service(session_factory, redis, channel, clock) -> BookingService:
    return BookingService(session_factory, RedisCache(redis), channel, settings, clock)


@pytest.fixture
def make_service(session_factory, redis, channel, clock):
    """BookingService with settings overrides, e.g. make_service(DISPATCH_MODE="auto_assign")."""
    def _make(**overrides) -> BookingService:
        config = settings.model_copy(update=overrides)
        return BookingService(session_factory, RedisCache(redis), channel, config, clock)
    return _make


@pytest_asyncio.fixture
async def client(redis, channel, clock, session_factory):
    from main import app

    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_code_channel] = lambda: channel
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Seed data ─────────────────────────────────────────────────

async def add_professional(
    session_factory,
    name: str,
    location=NEAR,
    specializations=("plumbing",),
    is_available: bool = True,
    is_verified: bool = True,
) -> Professional:
    async with transaction(session_factory) as session:
        professional = Professional(
            name=name,
            phone="9000000000",
            specializations=list(specializations),
            is_verified=is_verified,
            is_available=is_available,
            latitude=location[0] if location else None,
            longitude=location[1] if location else None,
        )
        session.add(professional)
    return professional


async def get_professional(session_factory, professional_id) -> Professional:
    async with transaction(session_factory) as session:
        return await session.get(Professional, professional_id)


@pytest_asyncio.fixture
async def customer(session_factory) -> Customer:
    async with transaction(session_factory) as session:
        c = Customer(name="Asha Rao", phone="9876543210", email="asha@example.com")
        session.add(c)
    return c


@pytest_asyncio.fixture
async def other_customer(session_factory) -> Customer:
    async with transaction(session_factory) as session:
        c = Customer(name="Vikram Shah", phone="9123456780")
        session.add(c)
    return c


@pytest_asyncio.fixture
async def plumbing(session_factory) -> Service:
    async with transaction(session_factory) as session:
        s = Service(name="Tap & Leak Repair", category=ServiceCategory.PLUMBING, base_price=Decimal("500.00"))
        session.add(s)
    return s


@pytest_asyncio.fixture
async def plumber(session_factory) -> Professional:
    return await add_professional(session_factory, "Ravi Kumar", NEAR)


@pytest_asyncio.fixture
async def far_plumber(session_factory) -> Professional:
    return await add_professional(session_factory, "Suresh Babu", FAR)


@pytest_asyncio.fixture
async def electrician(session_factory) -> Professional:
    return await add_professional(session_factory, "Imran Khan", NEAR, specializations=("electrical",))


async def create_pending(service: BookingService, customer, catalog_service, clock, **kwargs):
    params = dict(
        customer_id=customer.id,
        service_id=catalog_service.id,
        latitude=SITE[0],
        longitude=SITE[1],
        address="12 MG Road, Bangalore 560001",
        scheduled_at=scheduled_in(clock),
    )
    params.update(kwargs)
    booking, _ = await service.create_booking(**params)
    return booking


async def create_in_progress(service: BookingService, customer, catalog_service, professional, clock):
    booking = await create_pending(service, customer, catalog_service, clock)
    await service.accept(booking.id, professional.id)
    return await service.start(booking.id, professional.id)
