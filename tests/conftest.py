import os

# Must be set before anything under app/ reads settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["CHANNEL_BACKEND"] = "memory"
os.environ["SECRET_KEY"] = "test-secret"

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.locks import KeyedLock
from app.db.models import Doctor, Patient, User
from app.db.session import init_db
from app.realtime.broker import InMemoryBroker
from app.realtime.channel import MessageChannel
from app.schemas.consultation import ConsultationCreate
from app.services.consultation_service import ConsultationService
from app.services.identity_service import IdentityService
from app.services.message_service import MessageService
from app.services.presence_service import PresenceService

# Scheduled start used by every fixture consultation
T = datetime(2026, 3, 2, 10, 0)


class Clock:
    """Settable stand-in for datetime.utcnow."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime):
        self.now = now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Recorder:
    """Collects whatever a channel callback is called with."""

    def __init__(self):
        self.calls = []

    def __call__(self, item=None):
        self.calls.append(item)

    def __len__(self):
        return len(self.calls)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'teleconsult.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def broker():
    broker = InMemoryBroker()
    yield broker
    await broker.close()


@pytest.fixture
def channel(broker):
    return MessageChannel(broker)


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def clock():
    # Inside the join window by default
    return Clock(T - timedelta(minutes=10))


async def create_participant(session: AsyncSession, role: str, name: str):
    user = User(role=role, name=name, email=f"{name.split()[0].lower()}@example.com")
    session.add(user)
    await session.flush()
    if role == "doctor":
        profile = Doctor(user_id=user.id, name=name, specialty="General Practice")
    else:
        profile = Patient(user_id=user.id, name=name)
    session.add(profile)
    await session.commit()
    return user, profile


async def schedule(session: AsyncSession, doctor: Doctor, patient: Patient, scheduled_at: datetime = T, clock=None):
    return await ConsultationService(session, clock=clock or datetime.utcnow).create_consultation(
        ConsultationCreate(doctor_id=doctor.id, patient_id=patient.id, scheduled_at=scheduled_at)
    )


@pytest_asyncio.fixture
async def parties(session, clock):
    doctor, doctor_profile = await create_participant(session, "doctor", "Meera Iyer")
    patient, patient_profile = await create_participant(session, "patient", "Arjun Nair")
    stranger, _ = await create_participant(session, "patient", "Kavya Menon")
    consultation = await schedule(session, doctor_profile, patient_profile, clock=clock)
    return SimpleNamespace(
        doctor=doctor,
        patient=patient,
        stranger=stranger,
        doctor_profile=doctor_profile,
        patient_profile=patient_profile,
        consultation=consultation,
        cid=consultation.id,
    )


@pytest.fixture
def messages(session, channel, locks, clock):
    return MessageService(session, channel, locks=locks, clock=clock)


@pytest.fixture
def presence(session, channel, locks, clock):
    return PresenceService(session, channel, locks=locks, clock=clock)


@pytest_asyncio.fixture
async def identities(session, parties):
    service = IdentityService(session)
    return SimpleNamespace(
        doctor=await service.resolve_user(parties.doctor.id),
        patient=await service.resolve_user(parties.patient.id),
        stranger=await service.resolve_user(parties.stranger.id),
    )
