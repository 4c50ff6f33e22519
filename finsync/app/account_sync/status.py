"""
Sync Status State Machine

The only writer of Account.sync_status.

    active | error | authRequired --begin--> syncing
    syncing --succeed--> active
    syncing --fail--> error
    syncing --require_auth--> authRequired
    error | authRequired --relinked--> active

A syncing account whose row has not been touched for longer than
`abandoned_after` belongs to a sync that died without settling it. Such an
account may begin again and is reset by relinked.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from sqlalchemy.orm import Session

from finsync.app.models import Account, SyncStatus, utcnow
from .errors import InvalidStatusTransition

logger = logging.getLogger(__name__)

TERMINAL_STATES = {SyncStatus.ACTIVE, SyncStatus.ERROR, SyncStatus.AUTH_REQUIRED}


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SyncStateMachine:

    def __init__(self, db: Session, abandoned_after: Optional[timedelta] = None):
        self.db = db
        self.abandoned_after = abandoned_after

    def _require(self, account: Account, allowed, target: SyncStatus):
        if account.sync_status not in allowed:
            raise InvalidStatusTransition(
                f"Account {account.id}: cannot move from {account.sync_status.value} to {target.value}"
            )

    def is_abandoned(self, account: Account, now: Optional[datetime] = None) -> bool:
        """True when the account is syncing but no sync has touched it within `abandoned_after`."""
        if account.sync_status != SyncStatus.SYNCING or self.abandoned_after is None:
            return False
        touched = as_naive_utc(account.updated_at)
        if touched is None:
            return True
        return touched < (now or utcnow()) - self.abandoned_after

    def begin(self, account: Account):
        if self.is_abandoned(account):
            logger.warning(f"Account {account.id} was left in syncing by an interrupted sync, starting over")
        else:
            self._require(account, TERMINAL_STATES, SyncStatus.SYNCING)
        account.sync_status = SyncStatus.SYNCING
        account.updated_at = utcnow()

    def succeed(self, account: Account, now: Optional[datetime] = None):
        self._require(account, {SyncStatus.SYNCING}, SyncStatus.ACTIVE)
        account.sync_status = SyncStatus.ACTIVE
        account.sync_error = None
        account.sync_error_at = None
        account.last_sync_at = now or utcnow()

    def fail(self, account: Account, message: str, now: Optional[datetime] = None):
        self._require(account, {SyncStatus.SYNCING}, SyncStatus.ERROR)
        account.sync_status = SyncStatus.ERROR
        account.sync_error = message
        account.sync_error_at = now or utcnow()

    def require_auth(self, account: Account, message: str, now: Optional[datetime] = None):
        self._require(account, {SyncStatus.SYNCING}, SyncStatus.AUTH_REQUIRED)
        account.sync_status = SyncStatus.AUTH_REQUIRED
        account.sync_error = message
        account.sync_error_at = now or utcnow()

    def relinked(self, account: Account):
        """
        Reset an account after the user re-entered credentials.

        No-op when already active, and for an account a live sync still
        holds: that sync settles it.
        """
        if account.sync_status == SyncStatus.ACTIVE:
            return
        if account.sync_status == SyncStatus.SYNCING and not self.is_abandoned(account):
            logger.info(f"Account {account.id} is syncing, leaving its status to the running sync")
            return
        account.sync_status = SyncStatus.ACTIVE
        account.sync_error = None
        account.sync_error_at = None

    @asynccontextmanager
    async def track(self, account: Account) -> AsyncIterator[Account]:
        """
        Hold an account in syncing for the duration of the block.

        The syncing status is committed on entry. On exit the account is
        guaranteed to be in a terminal state: if the block did not settle
        it (including when the block raised), it is marked error. Any
        pending changes from a failed block are rolled back first.

        Example:
            >>> async with state.track(account):
            ...     result = await adapter.fetch(...)
            ...     state.succeed(account)
        """
        self.begin(account)
        self.db.commit()

        try:
            yield account
        except BaseException as e:
            self.db.rollback()
            if account.sync_status == SyncStatus.SYNCING:
                self.fail(account, str(e) or e.__class__.__name__)
            self.db.commit()
            raise
        else:
            if account.sync_status == SyncStatus.SYNCING:
                logger.warning(f"Sync of account {account.id} finished without a result, marking as error")
                self.fail(account, "Sync ended without a result")
            self.db.commit()
