"""
Transaction Deduplication Module

Assigns every normalized transaction a stable identity and merges it into
the store so that re-fetching an overlapping date range never duplicates:
1. Provider transaction ID (when the source has one)
2. Derived key from namespace, date, amount and description
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from finsync.app.models import Account, Transaction, utcnow
from .providers.base import NormalizedTransaction

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 100


def format_amount(amount) -> str:
    """Absolute value in its shortest decimal form ("120.5", "100", "0.07")."""
    value = abs(Decimal(str(amount)))
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return format(value.normalize(), 'f')


class TransactionDeduplicator:
    """
    Compute transaction identities and upsert batches.

    Known limitation: two genuinely distinct transactions with the same
    date, amount and description (and no provider id) get the same derived
    key and are merged into one row.
    """

    @staticmethod
    def generate_key(
        namespace: str,
        provider_tx_id: Optional[str],
        transaction_date: date,
        amount,
        description: str
    ) -> str:
        """
        Return the dedup identity for one transaction.

        Example:
            >>> TransactionDeduplicator.generate_key(
            ...     "israel", None, date(2024, 1, 15), Decimal("-120.5"), "SUPERMARKET"
            ... )
            'israel_2024-01-15_120.5_supermarket'
        """
        if provider_tx_id:
            return str(provider_tx_id)

        key = f"{namespace}_{transaction_date.isoformat()}_{format_amount(amount)}_{(description or '').strip()}"
        key = key.lower().replace('/', '_').replace('\\', '_')
        return key[:MAX_KEY_LENGTH]

    @staticmethod
    def collapse(namespace: str, transactions: Iterable[NormalizedTransaction]) -> Dict[str, NormalizedTransaction]:
        """Key a fetched batch by identity; later entries win on collision."""
        keyed: Dict[str, NormalizedTransaction] = {}
        for tx in transactions:
            key = TransactionDeduplicator.generate_key(
                namespace, tx.provider_tx_id, tx.date, tx.amount, tx.description
            )
            if key in keyed:
                logger.debug(f"Merging in-batch duplicate {key}")
            keyed[key] = tx
        return keyed

    @staticmethod
    def upsert(
        db: Session,
        account: Account,
        namespace: str,
        transactions: Iterable[NormalizedTransaction]
    ) -> int:
        """
        Merge a batch into the account's transactions.

        Adds to the session without committing; the caller commits the
        batch together with the balance update.

        Returns:
            Number of identities that did not exist before
        """
        new_count = 0
        now = utcnow()

        for key, tx in TransactionDeduplicator.collapse(namespace, transactions).items():
            existing = db.get(Transaction, (account.user_id, key))
            if existing is None:
                existing = Transaction(user_id=account.user_id, id=key)
                db.add(existing)
                new_count += 1

            existing.account_id = account.id
            existing.connection_id = account.connection_id
            existing.date = tx.date
            existing.amount = tx.amount
            existing.description = tx.description
            existing.currency = tx.currency
            existing.merchant_name = tx.merchant_name
            existing.pending = tx.pending
            existing.provider_tx_id = tx.provider_tx_id
            existing.updated_at = now

        return new_count
