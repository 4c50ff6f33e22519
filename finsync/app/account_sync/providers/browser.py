"""
Browser Provider Implementation

Scrapes banks that only offer a website. A BrowserSession from the session
manager is driven through login, an optional one-time-code step, and the
statement page described by the bank's SiteProfile.

Credential format (stored encrypted):
    {"companyId": "leumi", "creds": {"username": "...", "password": "..."}}
"""

import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from finsync.config import get_settings
from ..browser_session import BrowserSession, BrowserSessionManager, get_session_manager
from ..errors import ProviderError, ProviderErrorKind
from .base import ProviderAdapter, ProgressEvent, FetchResult, NormalizedAccount, NormalizedTransaction
from .sites import SiteProfile, load_site_profiles

logger = logging.getLogger(__name__)

AMOUNT_CLEANUP = re.compile(r"[^\d.\-]")


def parse_amount(text: str) -> Decimal:
    """
    Parse a displayed amount such as "₪ 1,234.50", "-120.5" or "120.50-".

    Raises:
        ValueError: If no number can be read
    """
    cleaned = (text or '').strip()
    negative = cleaned.startswith('-') or cleaned.endswith('-') or (cleaned.startswith('(') and cleaned.endswith(')'))
    digits = AMOUNT_CLEANUP.sub('', cleaned.replace(',', '')).replace('-', '')
    try:
        value = Decimal(digits)
    except InvalidOperation:
        raise ValueError(f"Unreadable amount: {text!r}")
    return -value if negative else value


class BrowserAdapter(ProviderAdapter):
    """
    Website scraping integration.

    One scrape yields both the account (number + balance) and its statement
    rows, so fetch() is the primary entry point and fetch_accounts /
    fetch_transactions each run a full scrape.
    """

    def __init__(
        self,
        session_manager: Optional[BrowserSessionManager] = None,
        profiles: Optional[Dict[str, SiteProfile]] = None,
        settings=None
    ):
        super().__init__()
        self.settings = settings or get_settings()
        self.session_manager = session_manager or get_session_manager()
        self.profiles = profiles if profiles is not None else load_site_profiles(self.settings.browser_sites_file)
        self.dedup_namespace = self.settings.browser_dedup_namespace

    @property
    def timeout_seconds(self) -> float:
        return self.session_manager.timeout_seconds

    def _parse_credential(self, credential: str) -> Dict[str, Any]:
        try:
            data = json.loads(credential)
        except ValueError:
            raise ProviderError(ProviderErrorKind.AUTH_EXPIRED, "Stored bank credentials are unreadable")

        if not isinstance(data, dict) or not data.get('companyId') or not isinstance(data.get('creds'), dict):
            raise ProviderError(ProviderErrorKind.AUTH_EXPIRED, "Stored bank credentials are incomplete")
        return data

    def _get_profile(self, company_id: str) -> SiteProfile:
        profile = self.profiles.get(company_id)
        if profile is None:
            raise ProviderError(ProviderErrorKind.UNKNOWN, f"Unsupported institution: {company_id}")
        return profile

    async def fetch(
        self,
        credential: str,
        from_date: date,
        to_date: date
    ) -> FetchResult:
        data = self._parse_credential(credential)
        profile = self._get_profile(data['companyId'])

        logger.info(f"Starting scrape for {profile.company_id} "
                    f"(credential keys: {', '.join(sorted(data['creds'].keys()))})")

        try:
            async with self.session_manager.acquire() as session:
                result = await self._scrape(session, profile, data['creds'], from_date, to_date)
        except ProviderError:
            raise
        except PlaywrightTimeoutError as e:
            logger.error(f"Scrape timed out for {profile.company_id}: {e}")
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"Bank website did not respond in time ({profile.display_name})") from e
        except PlaywrightError as e:
            logger.error(f"Browser error for {profile.company_id}: {e}")
            raise ProviderError(ProviderErrorKind.UNKNOWN, f"Browser error: {e}") from e

        logger.info(f"Scrape succeeded for {profile.company_id}: "
                    f"{len(result.accounts)} accounts, {len(result.transactions)} transactions")
        return result

    async def fetch_accounts(
        self,
        credential: str
    ) -> List[NormalizedAccount]:
        today = date.today()
        result = await self.fetch(credential, date(today.year - 1, today.month, 1), today)
        return result.accounts

    async def fetch_transactions(
        self,
        credential: str,
        from_date: date,
        to_date: date
    ) -> List[NormalizedTransaction]:
        result = await self.fetch(credential, from_date, to_date)
        return result.transactions

    async def _scrape(
        self,
        session: BrowserSession,
        profile: SiteProfile,
        creds: Dict[str, str],
        from_date: date,
        to_date: date
    ) -> FetchResult:
        page = session.page

        await self._emit(ProgressEvent.LOGGING_IN, company_id=profile.company_id,
                         live_session_url=session.live_session_url)
        await page.goto(profile.login_url)

        for key, selector in profile.fields.items():
            value = creds.get(key)
            if value is None:
                raise ProviderError(ProviderErrorKind.AUTH_EXPIRED, f"Missing credential field: {key}")
            await page.fill(selector, str(value))

        await page.click(profile.submit_selector)
        await self._wait_for_login(session, profile)

        await self._emit(ProgressEvent.NAVIGATING, company_id=profile.company_id)
        if profile.statement_url:
            await page.goto(profile.statement_url)

        await self._emit(ProgressEvent.PARSING_STATEMENT, company_id=profile.company_id)
        account = await self._read_account(page, profile)
        transactions = await self._read_transactions(page, profile, account.external_id, from_date, to_date)

        await self._emit(ProgressEvent.DONE, accounts=1, transactions=len(transactions))
        return FetchResult(
            accounts=[account],
            transactions=transactions,
            live_session_url=session.live_session_url
        )

    async def _wait_for_login(self, session: BrowserSession, profile: SiteProfile):
        """
        Wait until login succeeds, fails, or asks for a one-time code.

        When a code is requested and a human can reach the session, keep
        waiting (up to the session timeout) for them to type it in.
        """
        page = session.page
        outcomes = [profile.success_selector]
        if profile.login_error_selector:
            outcomes.append(profile.login_error_selector)
        if profile.otp_selector:
            outcomes.append(profile.otp_selector)

        await page.wait_for_selector(", ".join(outcomes))

        await self._raise_if_login_error(page, profile)

        if profile.otp_selector and await page.query_selector(profile.otp_selector) is not None:
            if not session.allows_human_input:
                raise ProviderError(
                    ProviderErrorKind.AUTH_EXPIRED,
                    "Bank requires a one-time code but no interactive session is available"
                )

            logger.info(f"Waiting for one-time code entry on {profile.company_id}")
            await self._emit(ProgressEvent.AWAITING_OTP, company_id=profile.company_id,
                             live_session_url=session.live_session_url)
            await page.wait_for_selector(profile.success_selector, timeout=session.timeout_ms)
            await self._raise_if_login_error(page, profile)

    async def _raise_if_login_error(self, page, profile: SiteProfile):
        if not profile.login_error_selector:
            return
        error_el = await page.query_selector(profile.login_error_selector)
        if error_el is not None:
            message = (await error_el.inner_text()).strip() or "Login rejected by bank"
            raise ProviderError(ProviderErrorKind.AUTH_EXPIRED, message)

    async def _read_account(self, page, profile: SiteProfile) -> NormalizedAccount:
        account_number = (await page.inner_text(profile.account_number_selector)).strip()
        balance = Decimal("0")
        if profile.balance_selector:
            try:
                balance = parse_amount(await page.inner_text(profile.balance_selector))
            except ValueError as e:
                logger.warning(f"Could not parse balance for {profile.company_id}: {e}")

        return NormalizedAccount(
            external_id=account_number,
            name=f"Account {account_number}",
            type="depository",
            balance=balance,
            currency=profile.currency
        )

    async def _read_transactions(
        self,
        page,
        profile: SiteProfile,
        account_number: str,
        from_date: date,
        to_date: date
    ) -> List[NormalizedTransaction]:
        transactions = []
        rows = await page.query_selector_all(profile.row_selector)

        for i, row in enumerate(rows):
            date_text = await self._cell_text(row, profile.date_cell)
            description = await self._cell_text(row, profile.description_cell)
            amount_text = await self._cell_text(row, profile.amount_cell)

            try:
                tx_date = datetime.strptime(date_text, profile.date_format).date()
                amount = parse_amount(amount_text)
            except ValueError as e:
                logger.warning(f"Skipping statement row #{i + 1}: {e}")
                continue

            if tx_date < from_date or tx_date > to_date:
                continue

            transactions.append(NormalizedTransaction(
                account_external_id=account_number,
                date=tx_date,
                amount=amount,
                description=description or 'Unknown',
                currency=profile.currency,
                merchant_name=description or None
            ))

        return transactions

    async def _cell_text(self, row, selector: str) -> str:
        cell = await row.query_selector(selector)
        if cell is None:
            return ''
        return (await cell.inner_text()).strip()
