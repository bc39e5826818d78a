import time as _time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import db
from app.services.errors import GatewayError
from app.services.wiring import build_services
from app.types.sms_contract import GatewayResult

TEST_SETTINGS = SimpleNamespace(
    TWILIO_ACCOUNT_SID=None,
    TWILIO_AUTH_TOKEN=None,
    TWILIO_FROM_NUMBER=None,
    TWILIO_MESSAGING_SERVICE_SID=None,
    TWILIO_TIMEOUT=5.0,
    WEBHOOK_PUBLIC_URL=None,
    DEFAULT_TIMEZONE="America/Los_Angeles",
    SMS_MORNING_NUDGE_AT="06:15",
    SMS_EVENING_REMINDER_AT="21:00",
    SMS_QUIET_HOURS_START=22,
    SMS_QUIET_HOURS_END=6,
    SMS_MAX_DAILY_FAILURES=1,
    SMS_MAX_ATTEMPTS=3,
    SMS_RETRY_BASE_DELAY=60,
    SMS_RETRY_MULTIPLIER=2,
    SMS_FAILED_RETENTION=7 * 24 * 3600,
    SMS_MAX_DEFER_SECONDS=2700,
    DEEP_LINK_MORNING="gtsd://today",
    DEEP_LINK_EVENING="gtsd://today?reminder=pending",
)


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self._now = now or datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
        self.slept = []

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now.astimezone(timezone.utc)

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self._now += timedelta(seconds=seconds)


class FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job, eta=None) -> str:
        self.jobs.append((job, eta))
        return f"queue-{len(self.jobs)}"

    def drain(self):
        jobs, self.jobs = self.jobs, []
        return jobs


class FakeGateway:
    """Records every send; ``outcomes`` are consumed in order (exceptions are raised)."""

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []
        self.valid_signature = "good-signature"

    def send(self, phone, body):
        self.calls.append((phone, body))
        if self.delay:
            _time.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, GatewayError):
                raise outcome
        return GatewayResult(provider_message_id=f"SM{len(self.calls):032d}", status="queued")

    def verify_signature(self, raw_body, signature, url):
        return signature == self.valid_signature


@pytest_asyncio.fixture
async def session_maker():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await db.create_all(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(session_maker, queue, gateway, clock):
    return build_services(session_maker, queue, TEST_SETTINGS, gateway=gateway, clock=clock)


@pytest.fixture
def make_user(session_maker):
    counter = {"n": 0}

    async def _make_user(**overrides):
        counter["n"] += 1
        fields = dict(
            name="Alex Rivera",
            phone=f"+1212555{1230 + counter['n']:04d}",
            timezone="America/New_York",
            sms_opt_in=True,
            is_active=True,
        )
        fields.update(overrides)
        async with session_maker() as s:
            user = db.User(**fields)
            s.add(user)
            await s.commit()
            return user.id

    return _make_user


@pytest.fixture
def make_task(session_maker):
    async def _make_task(user_id: int, due: datetime, status: str = "pending"):
        # SQLite drops tzinfo; store UTC wall time so range queries line up.
        async with session_maker() as s:
            s.add(db.DailyTask(user_id=user_id, status=status, due_date=due.astimezone(timezone.utc)))
            await s.commit()

    return _make_task
