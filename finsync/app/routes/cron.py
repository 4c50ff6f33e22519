"""
Scheduled Job Routes

Called by the platform scheduler, authenticated with the shared cron secret.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finsync.database import get_db
from finsync.app import schemas
from finsync.app.auth import verify_cron_secret
from finsync.app.account_sync.sweep import StalenessSweep
from finsync.app.routes.sync import get_sync_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.get("/sync-accounts", response_model=schemas.CronSyncResponse)
async def sync_stale_accounts(
    db: Session = Depends(get_db),
    service=Depends(get_sync_service)
):
    """Re-sync every stale account across all users within the sweep budget."""
    logger.info("Starting scheduled account sync")

    report = await StalenessSweep(db, orchestrator=service, settings=service.settings).run()

    return {
        'success': True,
        'duration': report.duration,
        'totalAccountsSynced': report.total_synced,
        'totalErrors': report.total_errors,
        'usersProcessed': report.users_processed,
        'deferred': report.deferred,
        'details': report.details
    }
