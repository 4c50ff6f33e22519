"""Shared pytest fixtures for the finsync test suite.

Provides an isolated in-memory database, a vault with a fixed test key,
fake provider adapters, and helpers to seed connections and accounts.
"""

import asyncio
import os
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

# Configure before anything imports finsync.config
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")
os.environ.setdefault("SECRET_KEY", "test-jwt-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from finsync.config import Settings
from finsync.database import Base
from finsync.app.models import User, Connection, Account, ProviderKind, SyncStatus
from finsync.app.account_sync.cache import MemoryCache
from finsync.app.account_sync.encryption import CredentialVault
from finsync.app.account_sync.errors import ProviderError
from finsync.app.account_sync.providers.base import (
    ProviderAdapter, ProgressEvent, NormalizedAccount, NormalizedTransaction
)
from finsync.app.account_sync.service import SyncOrchestrator

TEST_KEY = "test-encryption-key-0123456789abcdef"


class FakeAdapter(ProviderAdapter):
    """Provider adapter returning canned data, an error, or stalling."""

    timeout_seconds = 5

    def __init__(
        self,
        accounts: Optional[List[NormalizedAccount]] = None,
        transactions: Optional[List[NormalizedTransaction]] = None,
        error: Optional[ProviderError] = None,
        delay: float = 0,
        namespace: str = "fake"
    ):
        super().__init__()
        self.accounts = accounts or []
        self.transactions = transactions or []
        self.error = error
        self.delay = delay
        self.dedup_namespace = namespace
        self.credentials_seen = []
        # Per-credential overrides: credential -> ProviderError
        self.errors_by_credential = {}

    async def fetch_accounts(self, credential):
        self.credentials_seen.append(credential)
        await self._emit(ProgressEvent.FETCHING_ACCOUNTS)
        if self.delay:
            await asyncio.sleep(self.delay)
        if credential in self.errors_by_credential:
            raise self.errors_by_credential[credential]
        if self.error:
            raise self.error
        return list(self.accounts)

    async def fetch_transactions(self, credential, from_date, to_date):
        return [tx for tx in self.transactions if from_date <= tx.date <= to_date]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        encryption_key=TEST_KEY,
        secret_key="test-jwt-secret",
        cron_secret="cron-test-secret",
        token_provider_timeout_seconds=2,
        browser_provider_timeout_margin_seconds=1,
        _env_file=None
    )


@pytest.fixture(scope="session")
def vault():
    return CredentialVault(master_key=TEST_KEY)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def token_adapter():
    return FakeAdapter(namespace="plaid")


@pytest.fixture
def orchestrator(db, vault, cache, settings, token_adapter):
    return SyncOrchestrator(
        db,
        vault=vault,
        adapters={ProviderKind.TOKEN: token_adapter},
        cache=cache,
        settings=settings
    )


@pytest.fixture
def seed(db, vault):
    """Factory creating a user, a token connection and one account per external id."""

    def _seed(
        user_id: str = "user-1",
        credential: str = "access-token-1",
        external_ids=("acc-1",),
        item_id: Optional[str] = None,
        last_sync_at=None,
        sync_status: SyncStatus = SyncStatus.ACTIVE,
        encrypt: bool = True,
        updated_at=None
    ):
        if db.get(User, user_id) is None:
            db.add(User(id=user_id, email=f"{user_id}@example.com"))

        connection = Connection(
            user_id=user_id,
            provider=ProviderKind.TOKEN,
            external_item_id=item_id or f"item-{credential}",
            encrypted_credential=vault.seal(credential) if encrypt else credential,
        )
        db.add(connection)
        db.flush()

        accounts = []
        extra = {"updated_at": updated_at} if updated_at is not None else {}
        for external_id in external_ids:
            account = Account(
                connection_id=connection.id,
                user_id=user_id,
                external_account_id=external_id,
                name=f"Account {external_id}",
                type="depository",
                balance=Decimal("0"),
                currency="USD",
                sync_status=sync_status,
                last_sync_at=last_sync_at,
                **extra
            )
            db.add(account)
            accounts.append(account)

        db.commit()
        return connection, accounts

    return _seed


def make_tx(account_id="acc-1", days_ago=3, amount="-12.50",
            description="Coffee", provider_tx_id=None):
    return NormalizedTransaction(
        account_external_id=account_id,
        date=date.today() - timedelta(days=days_ago),
        amount=Decimal(amount),
        description=description,
        provider_tx_id=provider_tx_id
    )
