"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator, Callable

import base58
import pytest
import pytest_asyncio
from nacl.signing import SigningKey
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["DRY_RUN"] = "true"
os.environ["CONFIRMATION_TIMEOUT"] = "0.2"
os.environ["LOCK_TIMEOUT"] = "5"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ.pop("HOUSE_WALLET_ADDRESS", None)
os.environ.pop("HOUSE_WALLET_PRIVATE_KEY", None)
os.environ.pop("GAME_SERVER_NOTIFY_URL", None)

from payrail.ledger.models import Base
from payrail.ledger.repository import LedgerRepository
from payrail.notifications.game_server import reset_notifier
from payrail.rails.base import RailContext
from payrail.rails.router import RailRouter
from payrail.settlement.base import SimulatedSettlementNetwork
from payrail.settlement.factory import reset_settlement_network, set_settlement_network
from payrail.settlement.transaction import decode_transaction, encode_transaction, sign_transaction
from payrail.signing.factory import get_house_signer, reset_house_signer
from payrail.utils.locks import clear_user_locks


class UserWallet:
    """A client-side keypair standing in for a user's self-custody wallet."""

    def __init__(self, seed: bytes):
        self.key = SigningKey(seed)
        self.address = base58.b58encode(bytes(self.key.verify_key)).decode()

    def sign(self, unsigned_transaction: str) -> str:
        signed = sign_transaction(decode_transaction(unsigned_transaction), self.key)
        return encode_transaction(signed)


def make_wallet(label: str) -> UserWallet:
    return UserWallet(label.encode().ljust(32, b"\0")[:32])


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset cached collaborators between tests."""
    clear_user_locks()
    reset_settlement_network()
    reset_house_signer()
    reset_notifier()
    yield
    clear_user_locks()
    reset_settlement_network()
    reset_house_signer()
    reset_notifier()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def network() -> SimulatedSettlementNetwork:
    """Simulated settlement network installed as the process-wide client."""
    net = SimulatedSettlementNetwork(poll_interval=0.01)
    set_settlement_network(net)
    return net


@pytest.fixture
def house_address(network) -> str:
    """Address of the dry-run house wallet, funded well above the reserve."""
    address = get_house_signer().address
    network.set_balance(address, Decimal("100"))
    return address


@pytest.fixture
def alice() -> UserWallet:
    return make_wallet("alice")


@pytest.fixture
def bob() -> UserWallet:
    return make_wallet("bob")


@pytest.fixture
def wallet_factory() -> Callable[[str], UserWallet]:
    return make_wallet


@pytest_asyncio.fixture
async def rail_context(db_session, network, house_address) -> RailContext:
    return RailContext(db_session, network=network)


@pytest_asyncio.fixture
async def rails(rail_context) -> RailRouter:
    return RailRouter(rail_context)


@pytest_asyncio.fixture
async def registered_alice(rails, network, alice) -> UserWallet:
    """Alice with a registered, funded self-custody wallet."""
    network.set_balance(alice.address, Decimal("50"))
    await rails.register("alice", alice.address)
    await rails.ctx.commit()
    return alice
