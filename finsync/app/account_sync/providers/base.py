"""
Abstract base class for account data providers

Defines the common interface that the token (API) adapter and the browser
(scraping) adapter implement, plus the normalized shapes they return.
"""

import enum
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ProgressEvent(str, enum.Enum):
    LOGGING_IN = "loggingIn"
    AWAITING_OTP = "awaitingOtp"
    NAVIGATING = "navigating"
    PARSING_STATEMENT = "parsingStatement"
    FETCHING_ACCOUNTS = "fetchingAccounts"
    FETCHING_TRANSACTIONS = "fetchingTransactions"
    DONE = "done"


ProgressListener = Callable[[ProgressEvent, Dict[str, Any]], Any]


@dataclass
class NormalizedAccount:
    external_id: str
    name: str
    type: str = "depository"
    balance: Decimal = Decimal("0")
    currency: str = "USD"


@dataclass
class NormalizedTransaction:
    """
    Provider-neutral transaction.

    amount is signed: positive = money in, negative = money out.
    provider_tx_id is None when the source has no stable identifier.
    """

    account_external_id: Optional[str]
    date: date
    amount: Decimal
    description: str
    currency: str = "USD"
    provider_tx_id: Optional[str] = None
    merchant_name: Optional[str] = None
    pending: bool = False


@dataclass
class FetchResult:
    accounts: List[NormalizedAccount] = field(default_factory=list)
    transactions: List[NormalizedTransaction] = field(default_factory=list)
    live_session_url: Optional[str] = None


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Every failure must surface as ProviderError so the orchestrator can
    classify it. Progress events are informational only.
    """

    # Prefix used for derived dedup keys
    dedup_namespace: str = "provider"

    def __init__(self):
        self._listeners: List[ProgressListener] = []

    def on_progress(self, listener: ProgressListener) -> Callable[[], None]:
        """
        Register a progress listener (plain function or coroutine function).

        Listener failures never abort a fetch.

        Returns:
            Callable that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: ProgressEvent, **payload):
        for listener in list(self._listeners):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Progress listener failed on {event.value}: {e}")

    @abstractmethod
    async def fetch_accounts(
        self,
        credential: str
    ) -> List[NormalizedAccount]:
        """
        Fetch accounts visible with this credential.

        Args:
            credential: Decrypted credential (token or JSON login data)

        Returns:
            List of NormalizedAccount
        """
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        credential: str,
        from_date: date,
        to_date: date
    ) -> List[NormalizedTransaction]:
        """
        Fetch transactions within a date range.

        Args:
            credential: Decrypted credential
            from_date: Start date (inclusive)
            to_date: End date (inclusive)

        Returns:
            List of NormalizedTransaction across all accounts
        """
        pass

    async def fetch(
        self,
        credential: str,
        from_date: date,
        to_date: date
    ) -> FetchResult:
        """Fetch accounts and transactions in one call."""
        accounts = await self.fetch_accounts(credential)
        transactions = await self.fetch_transactions(credential, from_date, to_date)
        await self._emit(ProgressEvent.DONE, accounts=len(accounts), transactions=len(transactions))
        return FetchResult(accounts=accounts, transactions=transactions)
