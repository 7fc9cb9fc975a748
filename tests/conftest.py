from dataclasses import dataclass
from typing import Any

import httpx
import pytest

from init_fixtures import seed_fixtures
from rafflepay.config import Settings
from rafflepay.gateway import MockGateway
from rafflepay.infra.sql import Gated, make_async_engine
from rafflepay.model.entries import EntryIssuer
from rafflepay.model.ledger import LedgerStore
from rafflepay.model.orm import create_schema
from rafflepay.model.transaction import new_transaction
from rafflepay.review import TransactionReviewer
from rafflepay.server import create_app

WEBHOOK_SECRET = "test-webhook-secret"


@dataclass
class Database:
    sessions: Any
    gated: Gated

    def ledger(self, session) -> LedgerStore:
        return LedgerStore(db=session, gated=self.gated)

    def issuer(self, session) -> EntryIssuer:
        return EntryIssuer(db=session, gated=self.gated)

    def reviewer(self, session) -> TransactionReviewer:
        return TransactionReviewer(ledger=self.ledger(session),
                                   issuer=self.issuer(session))


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'rafflepay.db'}"


@pytest.fixture
async def database(database_url):
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    async with engine.begin() as conn:
        await create_schema(conn)
        await seed_fixtures(conn)
    yield Database(sessions=SessionAsync, gated=gated)
    await engine.dispose()


@pytest.fixture
async def session(database):
    async with database.sessions() as s:
        yield s


@pytest.fixture
def ledger(database, session):
    return database.ledger(session)


@pytest.fixture
def issuer(database, session):
    return database.issuer(session)


@pytest.fixture
def reviewer(database, session):
    return database.reviewer(session)


@pytest.fixture
def make_tx(ledger):
    """Insert a pending transaction; defaults to a bank-transfer ticket buy."""

    async def _make(**kw):
        params = dict(
            user_id="user-1",
            payment_method_id="pm-bank",
            purpose="raffle_ticket",
            amount="10.00",
            currency="USD",
            raffle_id="raffle-spring",
        )
        params.update(kw)
        return await ledger.insert(new_transaction(**params))

    return _make


@pytest.fixture
def gateway():
    return MockGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
async def app(database_url, gateway):
    settings = Settings(
        database_url=database_url,
        identity_backend="header",
        gateway_webhook_secret=WEBHOOK_SECRET,
        gateway_backoff_seconds=0.0,
    )
    app = create_app(settings, gateway=gateway)
    # ASGITransport does not run startup handlers
    async with app.state.engine.begin() as conn:
        await create_schema(conn)
        await seed_fixtures(conn)
    yield app
    await app.state.engine.dispose()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c


USER = {"x-user-id": "user-1", "x-user-role": "user"}
ADMIN = {"x-user-id": "alice", "x-user-role": "admin"}
STAFF = {"x-user-id": "bob", "x-user-role": "staff"}
