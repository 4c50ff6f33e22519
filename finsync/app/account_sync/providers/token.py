"""
Token Provider Implementation

Talks to a Plaid-compatible aggregator REST API with a durable access token.
Every endpoint is a JSON POST authenticated with client_id/secret in the body.

Documentation: https://plaid.com/docs/api/
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Any, List, Optional

import httpx

from finsync.config import get_settings
from ..errors import ProviderError, ProviderErrorKind
from .base import ProviderAdapter, ProgressEvent, NormalizedAccount, NormalizedTransaction

logger = logging.getLogger(__name__)

PLAID_HOSTS = {
    'sandbox': 'https://sandbox.plaid.com',
    'development': 'https://development.plaid.com',
    'production': 'https://production.plaid.com',
}

PAGE_SIZE = 500
MAX_PAGES = 100

AUTH_ERROR_CODES = {'ITEM_LOGIN_REQUIRED', 'INVALID_ACCESS_TOKEN', 'ITEM_NOT_FOUND', 'ACCESS_NOT_GRANTED'}
RATE_LIMIT_ERROR_CODES = {'RATE_LIMIT_EXCEEDED', 'TRANSACTIONS_LIMIT', 'ACCOUNTS_LIMIT'}


class TokenAdapter(ProviderAdapter):
    """
    Aggregator API integration.

    Plaid reports positive amounts for money leaving the account; amounts
    are negated so that positive always means money in.
    """

    dedup_namespace = "plaid"

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self.settings = settings or get_settings()
        self.base_url = PLAID_HOSTS.get(self.settings.plaid_env.lower(), PLAID_HOSTS['sandbox'])
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=60.0,
            transport=self._transport
        )

    def _classify(self, response: httpx.Response) -> ProviderError:
        """Turn an error response into a tagged ProviderError."""
        try:
            error_data = response.json()
        except ValueError:
            error_data = {}

        error_code = error_data.get('error_code', '') if isinstance(error_data, dict) else ''
        error_type = error_data.get('error_type', '') if isinstance(error_data, dict) else ''
        message = error_data.get('error_message') if isinstance(error_data, dict) else None
        message = message or f"Provider error {response.status_code}"

        logger.error(f"Aggregator API error - Status: {response.status_code}, code: {error_code or 'n/a'}")

        if error_code in AUTH_ERROR_CODES or response.status_code == 401:
            return ProviderError(ProviderErrorKind.AUTH_EXPIRED, message)
        if error_code in RATE_LIMIT_ERROR_CODES or error_type == 'RATE_LIMIT_EXCEEDED' or response.status_code == 429:
            return ProviderError(ProviderErrorKind.RATE_LIMITED, message)
        return ProviderError(ProviderErrorKind.UNKNOWN, f"{error_code}: {message}" if error_code else message)

    async def _post(self, client: httpx.AsyncClient, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            'client_id': self.settings.plaid_client_id,
            'secret': self.settings.plaid_secret,
            **body
        }
        try:
            response = await client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"Aggregator API timed out on {path}") from e
        except httpx.HTTPError as e:
            raise ProviderError(ProviderErrorKind.UNKNOWN, f"Aggregator API request failed: {e}") from e

        if not response.is_success:
            raise self._classify(response)

        return response.json()

    async def exchange_public_token(self, public_token: str) -> Dict[str, str]:
        """
        Exchange a short-lived public token from the link widget.

        Returns:
            {'access_token': str, 'item_id': str}

        Raises:
            ProviderError: If the exchange fails or the response is incomplete
        """
        async with self._client() as client:
            data = await self._post(client, '/item/public_token/exchange', {'public_token': public_token})

        access_token = data.get('access_token')
        item_id = data.get('item_id')
        if not access_token or not item_id:
            raise ProviderError(ProviderErrorKind.UNKNOWN, "Failed to exchange public token for access token or item_id")

        logger.info(f"Exchanged public token for item {item_id}")
        return {'access_token': access_token, 'item_id': item_id}

    async def fetch_accounts(
        self,
        credential: str
    ) -> List[NormalizedAccount]:
        await self._emit(ProgressEvent.FETCHING_ACCOUNTS)

        async with self._client() as client:
            data = await self._post(client, '/accounts/get', {'access_token': credential})

        accounts = self._normalize_accounts(data.get('accounts', []))
        logger.info(f"Fetched {len(accounts)} accounts")
        return accounts

    async def fetch_transactions(
        self,
        credential: str,
        from_date: date,
        to_date: date
    ) -> List[NormalizedTransaction]:
        """
        Fetch all transactions in the range, following offset pagination.

        Example:
            >>> transactions = await adapter.fetch_transactions(
            ...     access_token,
            ...     from_date=date.today() - timedelta(days=30),
            ...     to_date=date.today()
            ... )
        """
        await self._emit(ProgressEvent.FETCHING_TRANSACTIONS, from_date=from_date.isoformat(), to_date=to_date.isoformat())

        all_transactions: List[NormalizedTransaction] = []
        page_num = 0

        async with self._client() as client:
            while True:
                page_num += 1
                data = await self._post(client, '/transactions/get', {
                    'access_token': credential,
                    'start_date': from_date.isoformat(),
                    'end_date': to_date.isoformat(),
                    'options': {'count': PAGE_SIZE, 'offset': len(all_transactions)}
                })

                page = data.get('transactions', [])
                all_transactions.extend(self._normalize_transactions(page))

                total = data.get('total_transactions', len(all_transactions))
                logger.info(f"Page {page_num}: fetched {len(page)} transactions "
                            f"({len(all_transactions)}/{total})")

                if not page or len(all_transactions) >= total:
                    break

                if page_num >= MAX_PAGES:
                    logger.warning(f"Reached page limit of {MAX_PAGES}, stopping pagination")
                    break

        return all_transactions

    def _normalize_accounts(self, raw_accounts: List[Dict[str, Any]]) -> List[NormalizedAccount]:
        accounts = []
        for acc in raw_accounts:
            balances = acc.get('balances') or {}
            accounts.append(NormalizedAccount(
                external_id=acc['account_id'],
                name=acc.get('name') or acc.get('official_name') or 'Account',
                type=acc.get('type') or 'other',
                balance=Decimal(str(balances.get('current') or 0)),
                currency=balances.get('iso_currency_code') or 'USD'
            ))
        return accounts

    def _normalize_transactions(self, raw_transactions: List[Dict[str, Any]]) -> List[NormalizedTransaction]:
        transactions = []
        for tx in raw_transactions:
            transactions.append(NormalizedTransaction(
                account_external_id=tx.get('account_id'),
                date=date.fromisoformat(tx['date']),
                amount=-Decimal(str(tx.get('amount') or 0)),
                description=tx.get('name') or '',
                currency=tx.get('iso_currency_code') or 'USD',
                provider_tx_id=tx.get('transaction_id'),
                merchant_name=tx.get('merchant_name'),
                pending=bool(tx.get('pending'))
            ))
        return transactions
