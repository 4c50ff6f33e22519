"""
Connection Routes

Endpoints for linking institutions:
- Exchanging an aggregator public token
- Connecting a scraped bank with login credentials
- Looking up the live browser session of an in-flight sync
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from finsync.database import get_db
from finsync.app import models, schemas
from finsync.app.auth import get_current_user_id
from finsync.app.account_sync.cache import live_session_key, progress_key
from finsync.app.account_sync.errors import ProviderError
from finsync.app.account_sync.service import SyncOrchestrator
from finsync.app.routes.sync import get_sync_service, to_result_schema

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connections"])


@router.post("/plaid/exchange-public-token", response_model=schemas.PublicTokenExchangeResponse)
async def exchange_public_token(
    exchange_request: schemas.PublicTokenExchangeRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncOrchestrator = Depends(get_sync_service)
):
    """
    Link an aggregator item using the public token from the link widget.

    Example:
        POST /api/plaid/exchange-public-token
        {"publicToken": "public-sandbox-...", "institution_name": "Chase"}

        Response:
        {
            "message": "Public token exchanged successfully",
            "itemId": "item-...",
            "connectionId": "9c1e...",
            "accountsCount": 2
        }
    """
    try:
        connection = await service.exchange_public_token(
            user_id,
            exchange_request.public_token,
            institution_id=exchange_request.institution_id,
            institution_name=exchange_request.institution_name
        )
    except ProviderError as e:
        logger.error(f"Public token exchange failed for user {user_id}: {e.kind.value}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message
        )

    return {
        'message': 'Public token exchanged successfully',
        'itemId': connection.external_item_id,
        'connectionId': connection.id,
        'accountsCount': len(connection.accounts)
    }


@router.post("/banking/connect", response_model=schemas.BrowserConnectResponse, response_model_exclude_none=True)
async def connect_browser_institution(
    connect_request: schemas.BrowserConnectRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncOrchestrator = Depends(get_sync_service)
):
    """
    Connect a bank that is accessed by scraping its website.

    The request blocks until the first scrape finishes. While it runs, the
    live session URL (when the deployment offers one) can be polled from
    /banking/connections/{connection_id}/live-session.
    """
    logger.info(f"Connecting {connect_request.company_id} for user {user_id} "
                f"(credential keys: {', '.join(sorted(connect_request.credentials.keys()))})")
    try:
        connection, results = await service.connect_browser_institution(
            user_id,
            connect_request.company_id,
            connect_request.credentials
        )
    except ProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message
        )

    return {
        'success': True,
        'connectionId': connection.id,
        'accountsCount': len(results),
        'results': [to_result_schema(r) for r in results]
    }


@router.get("/banking/connections/{connection_id}/live-session", response_model=schemas.LiveSessionResponse)
async def get_live_session(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: SyncOrchestrator = Depends(get_sync_service)
):
    """Live browser session URL and latest progress event for a connection."""
    connection = db.query(models.Connection).filter(
        models.Connection.id == connection_id,
        models.Connection.user_id == user_id
    ).first()

    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )

    return {
        'connectionId': connection.id,
        'liveSessionUrl': await service.cache.get(live_session_key(connection.id)),
        'progress': await service.cache.get(progress_key(connection.id))
    }
