import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

# settings are read at import time; point them at throwaway resources first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "linkbus-import.db"))
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.deps import Actor
from app.config import settings
from app.db.base import Base
from app.db.session import build_engine, get_session
from app.models.models import Bus, Route, Seat, SeatMap, Trip, TripStatus, User
from app.services import auth as auth_service
from app.services import payment_gateway


T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
MTN_SECRET = "test_mtn_secret"


class FakeRedis:
    """Just enough of redis.asyncio.Redis for webhook dedupe and the sandbox provider."""

    def __init__(self):
        self.store = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def ping(self):
        return True


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "BOOKING_HOLD_MINUTES", 15)
    monkeypatch.setattr(settings, "PROVIDER_RETRY_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "PROVIDER_RETRY_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(settings, "PAYMENT_SANDBOX", True)
    monkeypatch.setattr(settings, "PAYMENT_SANDBOX_SUCCESS_RATE", 1.0)
    monkeypatch.setattr(settings, "PAYMENT_SANDBOX_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "MTN_SECRET", MTN_SECRET)
    return settings


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(payment_gateway, "redis_client", fake)
    return fake


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def call(session_factory):
    """Run ``fn(session, *args)`` on a fresh session that is closed afterwards."""

    async def _call(fn, *args, **kwargs):
        async with session_factory() as session:
            return await fn(session, *args, **kwargs)

    return _call


async def _fetch(session, model, pk):
    return await session.get(model, pk)


async def _make_trip(session_factory, capacity=10, seats_available=None, price="25000", seat_labels=None, status=TripStatus.SCHEDULED):
    async with session_factory() as session:
        async with session.begin():
            route = Route(origin="Kampala", destination=f"Gulu-{os.urandom(3).hex()}")
            bus = Bus(registration_number=f"UBA {os.urandom(3).hex()}", capacity=capacity)
            session.add_all([route, bus])
            await session.flush()
            if seat_labels:
                seatmap = SeatMap(bus_id=bus.id, layout={"rows": len(seat_labels)})
                session.add(seatmap)
                await session.flush()
                session.add_all([Seat(seatmap_id=seatmap.id, seat_number=label) for label in seat_labels])
            trip = Trip(
                route_id=route.id,
                bus_id=bus.id,
                departure_time=T0 + timedelta(days=1),
                price=Decimal(price),
                status=status,
                seats_available=capacity if seats_available is None else seats_available,
            )
            session.add(trip)
        return trip.id


@pytest.fixture
async def catalog(session_factory):
    async with session_factory() as session:
        async with session.begin():
            users = [
                User(email="passenger@example.com", full_name="Amina Nakato"),
                User(email="other@example.com", full_name="Joseph Okello"),
                User(email="admin@example.com", full_name="Ops Admin", is_admin=True),
            ]
            session.add_all(users)
    trip_id = await _make_trip(session_factory, capacity=10)
    passenger, other, admin = users
    return SimpleNamespace(
        trip_id=trip_id,
        user_id=passenger.id,
        other_id=other.id,
        admin_id=admin.id,
        passenger=Actor(user_id=passenger.id),
        other=Actor(user_id=other.id),
        admin=Actor(user_id=admin.id, is_admin=True),
    )


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def fetch(call):
    async def _get(model, pk):
        return await call(_fetch, model, pk)

    return _get


@pytest.fixture
def trip_factory(session_factory):
    async def _factory(**kwargs):
        return await _make_trip(session_factory, **kwargs)

    return _factory


@pytest.fixture
def bearer():
    def _headers(user_id, is_admin=False):
        token = auth_service.create_access_token(user_id, is_admin=is_admin)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def client(session_factory, fake_redis, monkeypatch):
    from app import main

    async def _session():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(main, "redis_client", fake_redis)
    main.app.dependency_overrides[get_session] = _session
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    main.app.dependency_overrides.clear()
