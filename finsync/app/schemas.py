from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class TokenData(BaseModel):
    user_id: Optional[str] = None


# Manual sync
class SyncRequest(BaseModel):
    account_id: Optional[str] = Field(None, alias="accountId", min_length=1)

    class Config:
        populate_by_name = True


class AccountSyncResult(BaseModel):
    account_id: str = Field(..., alias="accountId")
    account_name: str = Field(..., alias="accountName")
    success: bool
    error: Optional[str] = None

    class Config:
        populate_by_name = True


class SyncResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    synced: int
    errors: int
    results: List[AccountSyncResult] = []


# Scheduled sweep
class CronSyncResponse(BaseModel):
    success: bool = True
    duration: float
    total_accounts_synced: int = Field(..., alias="totalAccountsSynced")
    total_errors: int = Field(..., alias="totalErrors")
    users_processed: int = Field(..., alias="usersProcessed")
    deferred: int = 0
    details: List[Dict[str, Any]] = []

    class Config:
        populate_by_name = True


# Linking
class PublicTokenExchangeRequest(BaseModel):
    public_token: str = Field(..., alias="publicToken", min_length=1)
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None

    class Config:
        populate_by_name = True


class PublicTokenExchangeResponse(BaseModel):
    message: str
    item_id: str = Field(..., alias="itemId")
    connection_id: str = Field(..., alias="connectionId")
    accounts_count: int = Field(..., alias="accountsCount")

    class Config:
        populate_by_name = True


class BrowserConnectRequest(BaseModel):
    company_id: str = Field(..., alias="companyId", min_length=1)
    credentials: Dict[str, str]

    class Config:
        populate_by_name = True


class BrowserConnectResponse(BaseModel):
    success: bool = True
    connection_id: str = Field(..., alias="connectionId")
    accounts_count: int = Field(..., alias="accountsCount")
    results: List[AccountSyncResult] = []

    class Config:
        populate_by_name = True


class LiveSessionResponse(BaseModel):
    connection_id: str = Field(..., alias="connectionId")
    live_session_url: Optional[str] = Field(None, alias="liveSessionUrl")
    progress: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True
