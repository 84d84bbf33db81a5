"""Pytest fixtures for testing"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from payment_engine.api.main import create_app
from payment_engine.infrastructure.database.models import Base
from payment_engine.infrastructure.database.session import get_db
from payment_engine.domain.exceptions import ProviderError
from payment_engine.domain.integrity import IntegrityService
from payment_engine.domain.ledger import AccountLedger
from payment_engine.domain.models import ProviderResponse, RetryPolicy
from payment_engine.services.engine import TransactionEngine
from payment_engine.services.gateway_pool import Gateway, GatewayPool


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_SECRET = b"test-integrity-secret"


class FakeClock:
    """Controllable clock shared by ledger, integrity and orchestrator"""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProviderClient:
    """
    Scripted provider. Each submit pops the next outcome:
    "ok" (signed response), "tamper" (amount changed after signing),
    "hang" (never answers), "land_then_hang" (records the result for
    query_status, then never answers) or an exception instance to raise.
    Once the script is empty every submit succeeds. With status_hangs set,
    query_status never answers either.
    """

    def __init__(self, integrity: IntegrityService, clock: FakeClock, script: Optional[List[Any]] = None):
        self.integrity = integrity
        self.clock = clock
        self.script = list(script or [])
        self.submitted: List[Dict[str, Any]] = []
        self.status: Dict[str, ProviderResponse] = {}
        self.status_hangs = False

    def _respond(self, payload: Dict[str, Any]) -> ProviderResponse:
        timestamp = self.clock()
        response = ProviderResponse(
            transaction_id=payload["transaction_id"],
            amount=payload["amount"],
            timestamp=timestamp,
            claimed_hash=self.integrity.sign_response(payload["transaction_id"], payload["amount"], timestamp),
            reference="REF-" + payload["transaction_id"][:8],
        )
        self.status[payload["transaction_id"]] = response
        return response

    async def submit(self, payload: Dict[str, Any]) -> ProviderResponse:
        self.submitted.append(payload)
        outcome = self.script.pop(0) if self.script else "ok"
        if isinstance(outcome, ProviderError):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(3600)
        if outcome == "land_then_hang":
            self._respond(payload)
            await asyncio.sleep(3600)
        response = self._respond(payload)
        if outcome == "tamper":
            response.amount = response.amount * 100
        return response

    async def query_status(self, transaction_id: str) -> Optional[ProviderResponse]:
        if self.status_hangs:
            await asyncio.sleep(3600)
        return self.status.get(transaction_id)


class SleepRecorder:
    """Stands in for asyncio.sleep so backoff delays are observable and instant"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def integrity(clock: FakeClock) -> IntegrityService:
    return IntegrityService(secret=TEST_SECRET, session_ttl_seconds=300, stale_response_seconds=60, clock=clock)


@pytest.fixture
def ledger(clock: FakeClock) -> AccountLedger:
    return AccountLedger(clock=clock)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def primary_client(integrity: IntegrityService, clock: FakeClock) -> FakeProviderClient:
    return FakeProviderClient(integrity, clock)


@pytest.fixture
def secondary_client(integrity: IntegrityService, clock: FakeClock) -> FakeProviderClient:
    return FakeProviderClient(integrity, clock)


@pytest.fixture
def pool(primary_client: FakeProviderClient, secondary_client: FakeProviderClient) -> GatewayPool:
    return GatewayPool(
        [
            Gateway("primary", primary_client, max_concurrent=5, retry_policy=RetryPolicy(3, 1.0, True), timeout_seconds=5),
            Gateway("secondary", secondary_client, max_concurrent=5, retry_policy=RetryPolicy(3, 1.0, True), timeout_seconds=5),
        ],
        kind_routes={"business": "primary", "investment": "primary", "p2p": "primary", "withdrawal": "primary"},
    )


@pytest.fixture
def txn_engine(
    pool: GatewayPool,
    ledger: AccountLedger,
    integrity: IntegrityService,
    clock: FakeClock,
    sleeps: SleepRecorder,
) -> TransactionEngine:
    return TransactionEngine(
        pool=pool,
        ledger=ledger,
        integrity=integrity,
        lane_idle_seconds=0.5,
        sleep=sleeps,
        clock=clock,
    )


@pytest.fixture
def client(db: Session, txn_engine: TransactionEngine) -> TestClient:
    """Create FastAPI test client with test database and fake providers"""
    app = create_app(engine=txn_engine)

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
