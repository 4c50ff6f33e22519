"""
Account Sync Routes

User-facing endpoint for syncing one account or all of a user's accounts
on demand.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from finsync.database import get_db
from finsync.app import schemas
from finsync.app.auth import get_current_user_id
from finsync.app.account_sync.errors import AccountNotFound
from finsync.app.account_sync.service import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/banking", tags=["banking"])


def get_sync_service(db: Session = Depends(get_db)) -> SyncOrchestrator:
    return SyncOrchestrator(db)


def to_result_schema(result) -> dict:
    return {
        'accountId': result.account_id,
        'accountName': result.account_name,
        'success': result.success,
        'error': result.error
    }


@router.post("/sync", response_model=schemas.SyncResponse, response_model_exclude_none=True)
async def sync_accounts(
    sync_request: schemas.SyncRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncOrchestrator = Depends(get_sync_service)
):
    """
    Sync one account, or every account of the caller when accountId is omitted.

    Per-account failures are reported in the results, never as an HTTP error.

    Example:
        POST /api/banking/sync
        {"accountId": "3f2a..."}

        Response:
        {
            "success": true,
            "synced": 1,
            "errors": 0,
            "results": [{"accountId": "3f2a...", "accountName": "Checking", "success": true}]
        }
    """
    if sync_request.account_id:
        try:
            results = [await service.sync_account(user_id, sync_request.account_id)]
        except AccountNotFound:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Account not found"
            )
    else:
        results = await service.sync_all_accounts(user_id)

    if not results:
        return {
            'success': True,
            'message': 'No accounts to sync',
            'synced': 0,
            'errors': 0
        }

    synced = sum(1 for r in results if r.success)
    logger.info(f"Manual sync for user {user_id}: {synced} synced, {len(results) - synced} errors")

    return {
        'success': True,
        'synced': synced,
        'errors': len(results) - synced,
        'results': [to_result_schema(r) for r in results]
    }
