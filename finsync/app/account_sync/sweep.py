"""
Staleness Sweep

Scheduled pass that re-syncs every account whose last successful sync is
older than the staleness threshold. Runs under a wall-clock budget checked
between accounts; whatever is left when the budget runs out waits for the
next run.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from finsync.app.models import User, Account, SyncStatus, utcnow
from finsync.config import get_settings

from .errors import SweepBudgetExceeded
from .service import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    users_processed: int = 0
    total_synced: int = 0
    total_errors: int = 0
    deferred: int = 0
    duration: float = 0.0
    details: List[Dict[str, Any]] = field(default_factory=list)


class StalenessSweep:
    """
    Select stale accounts across all users and sync them one by one.

    Accounts waiting for the user to re-authenticate are never picked up.
    Syncing accounts are picked up only once their sync looks abandoned.
    Users with nothing stale are left out of the report.
    """

    def __init__(
        self,
        db: Session,
        orchestrator: Optional[SyncOrchestrator] = None,
        settings=None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator or SyncOrchestrator(db, settings=self.settings)
        self._clock = clock
        self._now = now

    def _stale_account_ids(self, user_id: str, cutoff: datetime) -> List[str]:
        abandoned_before = self._now() - timedelta(seconds=self.settings.abandoned_sync_seconds)
        rows = self.db.query(Account.id).filter(
            Account.user_id == user_id,
            Account.sync_status != SyncStatus.AUTH_REQUIRED,
            or_(
                Account.sync_status != SyncStatus.SYNCING,
                and_(Account.sync_status == SyncStatus.SYNCING, Account.updated_at < abandoned_before)
            ),
            or_(Account.last_sync_at.is_(None), Account.last_sync_at < cutoff)
        ).order_by(Account.created_at, Account.id).all()
        return [row.id for row in rows]

    def _plan(self, cutoff: datetime) -> List[Tuple[str, List[str]]]:
        user_ids = [row.id for row in self.db.query(User.id).order_by(User.id).all()]
        plan = [(user_id, self._stale_account_ids(user_id, cutoff)) for user_id in user_ids]
        return [(user_id, account_ids) for user_id, account_ids in plan if account_ids]

    def _check_budget(self, started: float):
        elapsed = self._clock() - started
        if elapsed >= self.settings.sweep_budget_seconds:
            raise SweepBudgetExceeded(
                f"Sweep budget of {self.settings.sweep_budget_seconds:g}s used up after {elapsed:.1f}s"
            )

    async def run(self) -> SweepReport:
        """
        Run one sweep pass.

        Example:
            >>> report = await StalenessSweep(db).run()
            >>> print(f"Synced {report.total_synced}, deferred {report.deferred}")
        """
        started = self._clock()
        cutoff = self._now() - timedelta(hours=self.settings.stale_threshold_hours)
        report = SweepReport()

        plan = self._plan(cutoff)
        logger.info(f"Sweep started: {sum(len(ids) for _, ids in plan)} stale accounts "
                    f"across {len(plan)} users (cutoff {cutoff.isoformat()})")

        for index, (user_id, account_ids) in enumerate(plan):
            detail: Dict[str, Any] = {'userId': user_id, 'synced': 0, 'errors': 0}
            attempted = 0

            try:
                for account_id in account_ids:
                    self._check_budget(started)
                    attempted += 1
                    result = await self.orchestrator.sync_account(user_id, account_id)
                    if result.success:
                        detail['synced'] += 1
                    else:
                        detail['errors'] += 1

            except SweepBudgetExceeded as e:
                logger.warning(str(e))
                report.deferred += len(account_ids) - attempted
                report.deferred += sum(len(ids) for _, ids in plan[index + 1:])
                if attempted:
                    self._record(report, detail)
                break

            except Exception as e:
                logger.error(f"Sweep failed for user {user_id}: {e}")
                detail['errors'] += 1
                detail['error'] = str(e)

            self._record(report, detail)

        report.duration = round(self._clock() - started, 3)
        logger.info(f"Sweep finished in {report.duration}s: {report.total_synced} synced, "
                    f"{report.total_errors} errors, {report.deferred} deferred")
        return report

    def _record(self, report: SweepReport, detail: Dict[str, Any]):
        report.users_processed += 1
        report.total_synced += detail['synced']
        report.total_errors += detail['errors']
        report.details.append(detail)
