"""
Account Sync Service

Main orchestration service that handles:
- Provider selection per connection
- Credential retrieval through the vault
- Fetching under a time budget
- Deduplicated transaction merge and balance update
- Sync status bookkeeping
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from finsync.app.models import (
    User, Connection, Account, ProviderKind, ConnectionStatus, SyncStatus, utcnow
)
from finsync.config import get_settings

from .cache import CachePort, get_cache, live_session_key, progress_key
from .deduplication import TransactionDeduplicator
from .encryption import CredentialVault
from .errors import (
    SyncEngineError, ProviderError, ProviderErrorKind, AccountNotFound, ConnectionNotFound
)
from .providers.base import ProviderAdapter, ProgressEvent, FetchResult, NormalizedAccount
from .providers.browser import BrowserAdapter
from .providers.token import TokenAdapter
from .status import SyncStateMachine

logger = logging.getLogger(__name__)

# Re-fetch one day before the last sync to catch late-posted transactions
SYNC_OVERLAP_DAYS = 1


@dataclass
class SyncResult:
    account_id: str
    account_name: str
    success: bool
    new_transaction_count: int = 0
    error: Optional[str] = None
    status: Optional[SyncStatus] = None


class SyncOrchestrator:
    """
    Main service for account synchronization.

    Constructed per request with a database session. Within one orchestrator
    account syncs run strictly one after another.
    """

    ADAPTERS = {
        ProviderKind.TOKEN: TokenAdapter,
        ProviderKind.BROWSER: BrowserAdapter,
    }

    def __init__(
        self,
        db: Session,
        vault: Optional[CredentialVault] = None,
        adapters: Optional[Dict[ProviderKind, ProviderAdapter]] = None,
        cache: Optional[CachePort] = None,
        settings=None,
        session_manager=None
    ):
        """
        Args:
            db: SQLAlchemy database session
            vault: Credential vault (default: built from settings)
            adapters: Pre-built adapters by provider kind, mainly for tests
            cache: Cache for progress and live session URLs
            session_manager: Browser session manager for the browser adapter
        """
        self.db = db
        self.settings = settings or get_settings()
        self.vault = vault or CredentialVault()
        self.cache = cache or get_cache()
        self.state = SyncStateMachine(
            db, abandoned_after=timedelta(seconds=self.settings.abandoned_sync_seconds)
        )
        self._session_manager = session_manager
        self._adapter_cache: Dict[ProviderKind, ProviderAdapter] = dict(adapters or {})

    def _get_adapter(self, kind: ProviderKind) -> ProviderAdapter:
        """
        Get adapter instance (cached).

        Raises:
            ValueError: If the provider kind is unsupported
        """
        kind = ProviderKind(kind)
        if kind in self._adapter_cache:
            return self._adapter_cache[kind]

        if kind not in self.ADAPTERS:
            raise ValueError(f"Unsupported provider: {kind}")

        if kind == ProviderKind.BROWSER:
            adapter = BrowserAdapter(session_manager=self._session_manager, settings=self.settings)
        else:
            adapter = TokenAdapter(settings=self.settings)

        self._adapter_cache[kind] = adapter
        return adapter

    def _time_budget(self, kind: ProviderKind, adapter: ProviderAdapter) -> float:
        if kind == ProviderKind.BROWSER:
            return adapter.timeout_seconds + self.settings.browser_provider_timeout_margin_seconds
        return self.settings.token_provider_timeout_seconds

    def _date_range(self, account: Account) -> Tuple[date, date]:
        to_date = utcnow().date()
        if account.last_sync_at:
            from_date = account.last_sync_at.date() - timedelta(days=SYNC_OVERLAP_DAYS)
        else:
            from_date = to_date - timedelta(days=self.settings.initial_sync_days)
        return min(from_date, to_date), to_date

    def _progress_listener(self, connection_id: str):
        ttl = self.settings.cache_ttl_seconds

        async def listener(event: ProgressEvent, payload: Dict[str, Any]):
            logger.info(f"Connection {connection_id}: {event.value}")
            await self.cache.set(progress_key(connection_id), {
                'event': event.value,
                'at': utcnow().isoformat()
            }, ttl)

            live_url = payload.get('live_session_url')
            if live_url:
                await self.cache.set(live_session_key(connection_id), live_url, ttl)

        return listener

    async def _with_budget(self, coro, budget: float):
        try:
            return await asyncio.wait_for(coro, timeout=budget)
        except asyncio.TimeoutError:
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"Provider did not respond within {budget:g} seconds")

    async def _fetch(
        self,
        connection: Connection,
        credential: str,
        from_date: date,
        to_date: date
    ) -> Tuple[ProviderAdapter, FetchResult]:
        connection_id = connection.id
        adapter = self._get_adapter(connection.provider)
        budget = self._time_budget(connection.provider, adapter)

        logger.info(f"Fetching {connection.provider.value} connection {connection_id} "
                    f"from {from_date} to {to_date} (budget {budget:g}s)")

        unsubscribe = adapter.on_progress(self._progress_listener(connection_id))
        try:
            result = await self._with_budget(adapter.fetch(credential, from_date, to_date), budget)
        finally:
            unsubscribe()
            await self.cache.delete(live_session_key(connection_id))

        return adapter, result

    def _apply(self, account: Account, adapter: ProviderAdapter, fetched: FetchResult) -> int:
        """Stage balance update and transaction merge for one account. Caller commits."""
        for normalized in fetched.accounts:
            if normalized.external_id == account.external_account_id:
                account.balance = normalized.balance
                account.currency = normalized.currency
                break

        if account.external_account_id:
            transactions = [
                tx for tx in fetched.transactions
                if tx.account_external_id == account.external_account_id
            ]
        else:
            transactions = fetched.transactions

        return TransactionDeduplicator.upsert(self.db, account, adapter.dedup_namespace, transactions)

    def _held_by_live_sync(self, account: Account) -> bool:
        return account.sync_status == SyncStatus.SYNCING and not self.state.is_abandoned(account)

    async def sync_account(self, user_id: str, account_id: str) -> SyncResult:
        """
        Sync one account and leave it in a terminal status.

        Provider failures never propagate: they are recorded on the account
        and reported in the returned SyncResult.

        Raises:
            AccountNotFound: If the account does not exist or is not the user's

        Example:
            >>> result = await orchestrator.sync_account(user_id, account_id)
            >>> print(f"{result.account_name}: {result.new_transaction_count} new")
        """
        account = self.db.query(Account).filter(
            Account.id == account_id,
            Account.user_id == user_id
        ).first()
        if not account:
            raise AccountNotFound(f"Account {account_id} not found")

        result = SyncResult(account_id=account.id, account_name=account.name, success=False)

        if self._held_by_live_sync(account):
            result.error = "Sync already in progress"
            result.status = SyncStatus.SYNCING
            return result

        try:
            async with self.state.track(account):
                connection = None
                try:
                    connection = self.db.get(Connection, account.connection_id)
                    if connection is None or connection.user_id != user_id:
                        raise ConnectionNotFound("Connection not found")

                    credential = self.vault.reveal(connection.encrypted_credential)
                    from_date, to_date = self._date_range(account)
                    adapter, fetched = await self._fetch(connection, credential, from_date, to_date)

                    result.new_transaction_count = self._apply(account, adapter, fetched)
                    self.state.succeed(account)
                    result.success = True

                except ProviderError as e:
                    self.db.rollback()
                    logger.error(f"Sync failed for account {account_id}: {e.kind.value} - {e.message}")
                    result.error = e.message
                    if e.requires_reauth:
                        self.state.require_auth(account, e.message)
                        connection.status = ConnectionStatus.AUTH_REQUIRED
                    else:
                        self.state.fail(account, e.message)

                except SyncEngineError as e:
                    self.db.rollback()
                    logger.error(f"Sync failed for account {account_id}: {e}")
                    result.error = str(e)
                    self.state.fail(account, str(e))

        except Exception as e:
            logger.exception(f"Unexpected error syncing account {account_id}")
            result.success = False
            result.error = str(e) or e.__class__.__name__

        result.status = account.sync_status
        if result.success:
            logger.info(f"Synced account {account_id}: {result.new_transaction_count} new transactions")
        return result

    async def sync_all_accounts(self, user_id: str) -> List[SyncResult]:
        """Sync every account of a user, one at a time. One failure never stops the rest."""
        account_ids = [
            row.id for row in self.db.query(Account.id).filter(
                Account.user_id == user_id
            ).order_by(Account.created_at, Account.id).all()
        ]

        results = []
        for account_id in account_ids:
            try:
                results.append(await self.sync_account(user_id, account_id))
            except SyncEngineError as e:
                logger.error(f"Skipping account {account_id}: {e}")
                results.append(SyncResult(account_id=account_id, account_name='', success=False, error=str(e)))
        return results

    def _ensure_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            user = User(id=user_id)
            self.db.add(user)
            self.db.flush()
        return user

    def _upsert_connection(
        self,
        user_id: str,
        provider: ProviderKind,
        external_item_id: str,
        credential: str,
        institution_id: Optional[str] = None,
        institution_name: Optional[str] = None
    ) -> Connection:
        """Create or re-link the connection for (user, provider, item)."""
        self._ensure_user(user_id)

        connection = self.db.query(Connection).filter(
            Connection.user_id == user_id,
            Connection.provider == provider,
            Connection.external_item_id == external_item_id
        ).first()

        if connection:
            logger.info(f"Re-linking existing connection {connection.id}")
            connection.encrypted_credential = self.vault.seal(credential)
            connection.status = ConnectionStatus.ACTIVE
            connection.institution_id = institution_id or connection.institution_id
            connection.institution_name = institution_name or connection.institution_name
            for account in connection.accounts:
                self.state.relinked(account)
        else:
            connection = Connection(
                user_id=user_id,
                provider=provider,
                external_item_id=external_item_id,
                encrypted_credential=self.vault.seal(credential),
                institution_id=institution_id,
                institution_name=institution_name,
                status=ConnectionStatus.ACTIVE
            )
            self.db.add(connection)

        self.db.flush()
        return connection

    def _upsert_accounts(self, connection: Connection, normalized: List[NormalizedAccount]) -> List[Account]:
        accounts = []
        for acc in normalized:
            account = self.db.query(Account).filter(
                Account.connection_id == connection.id,
                Account.external_account_id == acc.external_id
            ).first()

            if account is None:
                account = Account(
                    connection_id=connection.id,
                    user_id=connection.user_id,
                    external_account_id=acc.external_id,
                    sync_status=SyncStatus.ACTIVE
                )
                self.db.add(account)

            account.name = acc.name
            account.type = acc.type
            account.balance = acc.balance
            account.currency = acc.currency
            accounts.append(account)

        self.db.flush()
        return accounts

    async def exchange_public_token(
        self,
        user_id: str,
        public_token: str,
        institution_id: Optional[str] = None,
        institution_name: Optional[str] = None
    ) -> Connection:
        """
        Link an aggregator item from a public token.

        The durable access token is sealed by the vault before it is stored.
        Linking the same item again updates the existing connection.

        Raises:
            ProviderError: If the exchange or account discovery fails
        """
        adapter = self._get_adapter(ProviderKind.TOKEN)
        budget = self._time_budget(ProviderKind.TOKEN, adapter)

        exchanged = await self._with_budget(adapter.exchange_public_token(public_token), budget)

        connection = self._upsert_connection(
            user_id, ProviderKind.TOKEN, exchanged['item_id'], exchanged['access_token'],
            institution_id=institution_id, institution_name=institution_name
        )

        normalized = await self._with_budget(adapter.fetch_accounts(exchanged['access_token']), budget)
        accounts = self._upsert_accounts(connection, normalized)

        self.db.commit()
        logger.info(f"Linked item {exchanged['item_id']} for user {user_id} with {len(accounts)} accounts")
        return connection

    async def connect_browser_institution(
        self,
        user_id: str,
        company_id: str,
        credentials: Dict[str, str]
    ) -> Tuple[Connection, List[SyncResult]]:
        """
        Link a scraped bank and import its first statement.

        The login data is sealed and stored, then one scrape discovers the
        accounts and their transactions.

        Raises:
            ProviderError: If the scrape fails (the connection is kept)
        """
        credential = json.dumps({'companyId': company_id, 'creds': credentials})
        connection = self._upsert_connection(user_id, ProviderKind.BROWSER, company_id, credential)
        if not connection.institution_id:
            connection.institution_id = company_id
        self.db.commit()

        to_date = utcnow().date()
        from_date = to_date - timedelta(days=self.settings.initial_sync_days)

        try:
            adapter, fetched = await self._fetch(connection, credential, from_date, to_date)
        except ProviderError as e:
            if e.requires_reauth:
                connection.status = ConnectionStatus.AUTH_REQUIRED
                self.db.commit()
            raise

        accounts = self._upsert_accounts(connection, fetched.accounts)
        self.db.commit()

        results = []
        for account in accounts:
            result = SyncResult(account_id=account.id, account_name=account.name, success=False)
            if self._held_by_live_sync(account):
                result.error = "Sync already in progress"
                result.status = account.sync_status
                results.append(result)
                continue
            async with self.state.track(account):
                result.new_transaction_count = self._apply(account, adapter, fetched)
                self.state.succeed(account)
                result.success = True
            result.status = account.sync_status
            results.append(result)

        logger.info(f"Connected {company_id} for user {user_id} with {len(accounts)} accounts")
        return connection, results
