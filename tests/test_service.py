"""Tests for the sync orchestrator."""

import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from finsync.app.models import Account, Connection, Transaction, ProviderKind, ConnectionStatus, SyncStatus, utcnow
from finsync.app.account_sync.cache import progress_key
from finsync.app.account_sync.encryption import CredentialVault
from finsync.app.account_sync.errors import AccountNotFound, ProviderError, ProviderErrorKind
from finsync.app.account_sync.providers.base import NormalizedAccount
from finsync.app.account_sync.service import SyncOrchestrator

from conftest import FakeAdapter, make_tx


def fixture_data(adapter, external_id="acc-1", balance="1520.75"):
    adapter.accounts = [NormalizedAccount(external_id=external_id, name="Checking", balance=Decimal(balance))]
    adapter.transactions = [
        make_tx(external_id, description="Coffee", amount="-4.50", provider_tx_id="tx-1"),
        make_tx(external_id, description="Salary", amount="3000", provider_tx_id="tx-2", days_ago=5),
    ]


class TestSyncAccount:

    def test_successful_sync(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed()
        fixture_data(token_adapter)

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert result.success
        assert result.new_transaction_count == 2
        assert result.status == SyncStatus.ACTIVE
        assert token_adapter.credentials_seen == ["access-token-1"]

        db.refresh(account)
        assert account.sync_status == SyncStatus.ACTIVE
        assert account.balance == Decimal("1520.75")
        assert account.last_sync_at is not None
        assert account.sync_error is None

    def test_resync_is_idempotent(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed()
        fixture_data(token_adapter)

        asyncio.run(orchestrator.sync_account("user-1", account.id))
        before = {(t.id, t.amount) for t in db.query(Transaction).all()}
        second = asyncio.run(orchestrator.sync_account("user-1", account.id))
        after = {(t.id, t.amount) for t in db.query(Transaction).all()}

        assert second.success
        assert second.new_transaction_count == 0
        assert before == after

    def test_only_matching_account_transactions_are_stored(self, db, seed, orchestrator, token_adapter) -> None:
        _, (checking, savings) = seed(external_ids=("acc-1", "acc-2"))
        fixture_data(token_adapter)
        token_adapter.transactions.append(make_tx("acc-2", provider_tx_id="tx-3"))

        asyncio.run(orchestrator.sync_account("user-1", savings.id))

        (stored,) = db.query(Transaction).all()
        assert stored.id == "tx-3"
        assert stored.account_id == savings.id

    def test_unknown_error_marks_account_error(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed()
        token_adapter.error = ProviderError(ProviderErrorKind.UNKNOWN, "Bank exploded")

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert not result.success
        assert result.error == "Bank exploded"
        db.refresh(account)
        assert account.sync_status == SyncStatus.ERROR
        assert account.sync_error == "Bank exploded"
        assert account.sync_error_at is not None

    def test_auth_expired_requires_reauth(self, db, seed, orchestrator, token_adapter) -> None:
        connection, (account,) = seed()
        token_adapter.error = ProviderError(ProviderErrorKind.AUTH_EXPIRED, "ITEM_LOGIN_REQUIRED")

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert result.status == SyncStatus.AUTH_REQUIRED
        db.refresh(account)
        db.refresh(connection)
        assert account.sync_status == SyncStatus.AUTH_REQUIRED
        assert connection.status == ConnectionStatus.AUTH_REQUIRED

    def test_slow_provider_times_out(self, db, seed, orchestrator, token_adapter, settings) -> None:
        _, (account,) = seed()
        settings.token_provider_timeout_seconds = 0.1
        token_adapter.delay = 2

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert not result.success
        assert "did not respond" in result.error
        db.refresh(account)
        assert account.sync_status == SyncStatus.ERROR

    def test_unexpected_exception_still_ends_terminal(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed()
        token_adapter.error = RuntimeError("adapter bug")

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert not result.success
        assert result.status == SyncStatus.ERROR
        db.refresh(account)
        assert account.sync_status == SyncStatus.ERROR

    def test_undecryptable_credential_marks_error(self, db, seed, orchestrator) -> None:
        connection, (account,) = seed()
        other = CredentialVault(master_key="a-completely-different-master-key!")
        connection.encrypted_credential = other.seal("access-token-1")
        db.commit()

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert not result.success
        assert result.status == SyncStatus.ERROR

    def test_legacy_plaintext_credential_still_syncs(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed(credential="legacy-token", encrypt=False)
        fixture_data(token_adapter)

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert result.success
        assert token_adapter.credentials_seen == ["legacy-token"]

    def test_other_users_account_is_not_found(self, db, seed, orchestrator) -> None:
        _, (account,) = seed(user_id="someone-else")

        with pytest.raises(AccountNotFound):
            asyncio.run(orchestrator.sync_account("user-1", account.id))

    def test_account_already_syncing_is_left_alone(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed(sync_status=SyncStatus.SYNCING)

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert not result.success
        assert result.status == SyncStatus.SYNCING
        assert token_adapter.credentials_seen == []

    def test_abandoned_sync_is_started_over(self, db, seed, orchestrator, token_adapter) -> None:
        _, (account,) = seed(sync_status=SyncStatus.SYNCING, updated_at=utcnow() - timedelta(hours=2))
        fixture_data(token_adapter)

        result = asyncio.run(orchestrator.sync_account("user-1", account.id))

        assert result.success
        assert result.status == SyncStatus.ACTIVE
        assert token_adapter.credentials_seen == ["access-token-1"]

    def test_progress_is_written_to_cache(self, db, seed, orchestrator, token_adapter, cache) -> None:
        connection, (account,) = seed()
        fixture_data(token_adapter)

        asyncio.run(orchestrator.sync_account("user-1", account.id))

        progress = asyncio.run(cache.get(progress_key(connection.id)))
        assert progress["event"] == "done"
        assert token_adapter._listeners == []


class TestSyncAllAccounts:

    def test_partial_failure_is_isolated(self, db, seed, orchestrator, token_adapter) -> None:
        _, (failing,) = seed(credential="cred-a", external_ids=("acc-a",))
        _, (working,) = seed(credential="cred-b", external_ids=("acc-b",))
        token_adapter.accounts = [NormalizedAccount(external_id="acc-b", name="B")]
        token_adapter.transactions = [make_tx("acc-b", provider_tx_id="tx-b")]
        token_adapter.errors_by_credential["cred-a"] = ProviderError(ProviderErrorKind.UNKNOWN, "down")

        results = asyncio.run(orchestrator.sync_all_accounts("user-1"))

        assert len(results) == 2
        by_id = {r.account_id: r for r in results}
        assert not by_id[failing.id].success
        assert by_id[working.id].success

        db.expire_all()
        assert db.get(Account, failing.id).sync_status == SyncStatus.ERROR
        assert db.get(Account, working.id).sync_status == SyncStatus.ACTIVE

    def test_no_account_left_syncing(self, db, seed, orchestrator, token_adapter) -> None:
        seed(credential="cred-a", external_ids=("acc-a", "acc-b"))
        token_adapter.errors_by_credential["cred-a"] = RuntimeError("crash")

        asyncio.run(orchestrator.sync_all_accounts("user-1"))

        db.expire_all()
        assert db.query(Account).filter(Account.sync_status == SyncStatus.SYNCING).count() == 0

    def test_user_without_accounts(self, orchestrator) -> None:
        assert asyncio.run(orchestrator.sync_all_accounts("nobody")) == []


class FakeTokenAdapter(FakeAdapter):

    async def exchange_public_token(self, public_token):
        if public_token == "bad":
            raise ProviderError(ProviderErrorKind.UNKNOWN, "INVALID_PUBLIC_TOKEN")
        return {'access_token': f"access-{public_token}", 'item_id': "item-xyz"}


class TestLinking:

    def test_exchange_public_token_is_idempotent(self, db, vault, cache, settings) -> None:
        adapter = FakeTokenAdapter(
            accounts=[NormalizedAccount(external_id="acc-1", name="Checking", balance=Decimal("10"))],
            namespace="plaid"
        )
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.TOKEN: adapter},
                                        cache=cache, settings=settings)

        first = asyncio.run(orchestrator.exchange_public_token("user-9", "public-1", institution_name="Chase"))
        second = asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))

        assert first.id == second.id
        assert db.query(Connection).count() == 1
        assert db.query(Account).count() == 1
        assert second.institution_name == "Chase"
        assert second.encrypted_credential != "access-public-1"
        assert vault.reveal(second.encrypted_credential) == "access-public-1"

    def test_relink_resets_auth_required_accounts(self, db, vault, cache, settings) -> None:
        adapter = FakeTokenAdapter(accounts=[NormalizedAccount(external_id="acc-1", name="Checking")])
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.TOKEN: adapter},
                                        cache=cache, settings=settings)
        connection = asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))
        (account,) = connection.accounts
        account.sync_status = SyncStatus.AUTH_REQUIRED
        connection.status = ConnectionStatus.AUTH_REQUIRED
        db.commit()

        asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))

        db.expire_all()
        assert db.get(Account, account.id).sync_status == SyncStatus.ACTIVE
        assert db.get(Connection, connection.id).status == ConnectionStatus.ACTIVE

    def test_failed_exchange_creates_nothing(self, db, vault, cache, settings) -> None:
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.TOKEN: FakeTokenAdapter()},
                                        cache=cache, settings=settings)

        with pytest.raises(ProviderError):
            asyncio.run(orchestrator.exchange_public_token("user-9", "bad"))

        assert db.query(Connection).count() == 0

    def test_connect_browser_institution(self, db, vault, cache, settings) -> None:
        adapter = FakeAdapter(
            accounts=[NormalizedAccount(external_id="12-345-678", name="Account 12-345-678", currency="ILS")],
            transactions=[make_tx("12-345-678", description="SUPERMARKET", amount="-120.5")],
            namespace="israel"
        )
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.BROWSER: adapter},
                                        cache=cache, settings=settings)

        connection, results = asyncio.run(orchestrator.connect_browser_institution(
            "user-7", "leumi", {"username": "dana", "password": "pw"}
        ))

        assert connection.external_item_id == "leumi"
        stored = json.loads(vault.reveal(connection.encrypted_credential))
        assert stored == {"companyId": "leumi", "creds": {"username": "dana", "password": "pw"}}
        assert "dana" not in connection.encrypted_credential

        assert [r.success for r in results] == [True]
        (tx,) = db.query(Transaction).all()
        assert tx.id.startswith("israel_") and tx.id.endswith("_120.5_supermarket")

    def test_connect_browser_login_failure(self, db, vault, cache, settings) -> None:
        adapter = FakeAdapter(error=ProviderError(ProviderErrorKind.AUTH_EXPIRED, "Wrong password"))
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.BROWSER: adapter},
                                        cache=cache, settings=settings)

        with pytest.raises(ProviderError):
            asyncio.run(orchestrator.connect_browser_institution("user-7", "leumi", {"username": "x"}))

        (connection,) = db.query(Connection).all()
        assert connection.status == ConnectionStatus.AUTH_REQUIRED

    def test_relink_leaves_running_sync_alone(self, db, vault, cache, settings) -> None:
        adapter = FakeTokenAdapter(accounts=[NormalizedAccount(external_id="acc-1", name="Checking")])
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.TOKEN: adapter},
                                        cache=cache, settings=settings)
        connection = asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))
        (account,) = connection.accounts
        account.sync_status = SyncStatus.SYNCING
        db.commit()

        relinked = asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))

        db.expire_all()
        assert relinked.id == connection.id
        assert db.get(Account, account.id).sync_status == SyncStatus.SYNCING
        assert db.get(Connection, connection.id).status == ConnectionStatus.ACTIVE

    def test_relink_resets_abandoned_sync(self, db, vault, cache, settings) -> None:
        adapter = FakeTokenAdapter(accounts=[NormalizedAccount(external_id="acc-1", name="Checking")])
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.TOKEN: adapter},
                                        cache=cache, settings=settings)
        connection = asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))
        (account,) = connection.accounts
        account.sync_status = SyncStatus.SYNCING
        account.updated_at = utcnow() - timedelta(hours=2)
        db.commit()

        asyncio.run(orchestrator.exchange_public_token("user-9", "public-1"))

        db.expire_all()
        assert db.get(Account, account.id).sync_status == SyncStatus.ACTIVE

    def test_connect_browser_skips_running_sync(self, db, vault, cache, settings) -> None:
        adapter = FakeAdapter(
            accounts=[NormalizedAccount(external_id="12-345-678", name="Account 12-345-678", currency="ILS")],
            namespace="israel"
        )
        orchestrator = SyncOrchestrator(db, vault=vault, adapters={ProviderKind.BROWSER: adapter},
                                        cache=cache, settings=settings)
        connection, _ = asyncio.run(orchestrator.connect_browser_institution("user-7", "leumi", {"username": "dana"}))
        (account,) = connection.accounts
        account.sync_status = SyncStatus.SYNCING
        db.commit()

        _, results = asyncio.run(orchestrator.connect_browser_institution("user-7", "leumi", {"username": "dana"}))

        (result,) = results
        assert not result.success
        assert result.error == "Sync already in progress"
        assert db.get(Account, account.id).sync_status == SyncStatus.SYNCING
