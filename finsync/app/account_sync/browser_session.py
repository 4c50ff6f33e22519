"""
Browser Session Manager

Hands out exclusively-owned automated browser sessions for banks that have no
API. The mode is fixed by deployment configuration (BROWSER_MODE):

- local: Playwright's bundled Chromium, always visible so a developer can
  type a one-time code by hand
- remote_cloud: a managed remote browser reached over CDP; the user can open
  its per-session live URL to complete a second factor while automation waits
- containerized: headless Chrome at a fixed path, fully unattended
"""

import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from finsync.config import get_settings
from .errors import SessionReleasedError

logger = logging.getLogger(__name__)

# A human may need to act in local and remote_cloud mode
HUMAN_TIMEOUT_MS = 600_000
UNATTENDED_TIMEOUT_MS = 120_000

CHROME_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
]


class BrowserMode(str, enum.Enum):
    LOCAL = "local"
    REMOTE_CLOUD = "remote_cloud"
    CONTAINERIZED = "containerized"


class BrowserSession:
    """
    Capability handed to exactly one Browser Adapter invocation.

    Only BrowserSessionManager creates these. Once the manager releases the
    session, every accessor raises SessionReleasedError.
    """

    def __init__(self, mode: BrowserMode, page: Any, timeout_ms: int, live_session_url: Optional[str] = None):
        self.mode = mode
        self.timeout_ms = timeout_ms
        self.live_session_url = live_session_url
        self._page = page
        self._released = False

    @property
    def page(self) -> Any:
        if self._released:
            raise SessionReleasedError("Browser session has already been released")
        return self._page

    @property
    def released(self) -> bool:
        return self._released

    @property
    def allows_human_input(self) -> bool:
        return self.mode in (BrowserMode.LOCAL, BrowserMode.REMOTE_CLOUD)

    def _release(self):
        self._released = True
        self._page = None


class BrowserSessionManager:
    """
    Acquire and release browser sessions.

    Concurrent sessions are capped by max_browser_sessions; callers beyond the
    cap wait for a slot.
    """

    def __init__(self, settings=None, playwright_factory=async_playwright):
        self.settings = settings or get_settings()
        self._playwright_factory = playwright_factory
        self._slots = asyncio.Semaphore(max(1, self.settings.max_browser_sessions))

        mode = BrowserMode(self.settings.browser_mode)
        if mode == BrowserMode.REMOTE_CLOUD and not self.settings.browserless_api_key:
            logger.warning("BROWSER_MODE=remote_cloud but BROWSERLESS_API_KEY is missing, using containerized mode")
            mode = BrowserMode.CONTAINERIZED
        self.mode = mode

    @property
    def timeout_ms(self) -> int:
        if self.mode == BrowserMode.CONTAINERIZED:
            return UNATTENDED_TIMEOUT_MS
        return HUMAN_TIMEOUT_MS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def _remote_endpoint(self) -> str:
        return f"{self.settings.browserless_url}?token={self.settings.browserless_api_key}&--window-size=1920,1080"

    async def _open_browser(self, playwright):
        if self.mode == BrowserMode.LOCAL:
            browser = await playwright.chromium.launch(headless=False, args=CHROME_ARGS)
            logger.info("Browser launched in VISIBLE mode")
            return browser

        if self.mode == BrowserMode.REMOTE_CLOUD:
            logger.info("Connecting to remote cloud browser...")
            browser = await playwright.chromium.connect_over_cdp(self._remote_endpoint())
            logger.info("Connected to remote browser")
            return browser

        browser = await playwright.chromium.launch(
            headless=True,
            executable_path=self.settings.chrome_executable_path,
            args=CHROME_ARGS + ['--disable-gpu'],
        )
        logger.info("Headless browser launched")
        return browser

    async def _new_page(self, browser):
        # A CDP-connected browser already has a default context
        if self.mode == BrowserMode.REMOTE_CLOUD and browser.contexts:
            context = browser.contexts[0]
        else:
            context = await browser.new_context()

        page = await context.new_page()
        page.set_default_timeout(self.timeout_ms)
        page.set_default_navigation_timeout(self.timeout_ms)
        return page

    async def _request_live_url(self, page) -> Optional[str]:
        """
        Ask the remote browser for a live URL scoped to this session.

        The URL carries its own session token, never the account API key.
        """
        try:
            cdp = await page.context.new_cdp_session(page)
            response = await cdp.send("Browserless.liveURL")
        except PlaywrightError as e:
            logger.warning(f"Remote browser did not provide a live session URL: {e}")
            return None
        return response.get("liveURL")

    async def _release_browser(self, playwright, browser):
        try:
            if browser is not None and self.mode != BrowserMode.REMOTE_CLOUD:
                await browser.close()
        except Exception as e:
            logger.warning(f"Failed to close browser cleanly: {e}")
        finally:
            # For remote_cloud this only drops our connection; the remote
            # browser stays up so the session can be revisited
            await playwright.stop()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[BrowserSession]:
        """
        Yield a fresh BrowserSession, releasing it on every exit path.

        Example:
            >>> async with manager.acquire() as session:
            ...     await session.page.goto(profile.login_url)
        """
        async with self._slots:
            logger.info(f"Acquiring browser session (mode={self.mode.value})")
            playwright = await self._playwright_factory().start()
            browser = None
            session = None
            try:
                browser = await self._open_browser(playwright)
                page = await self._new_page(browser)
                live_url = None
                if self.mode == BrowserMode.REMOTE_CLOUD:
                    live_url = await self._request_live_url(page)
                session = BrowserSession(self.mode, page, self.timeout_ms, live_url)
                yield session
            finally:
                if session is not None:
                    session._release()
                await self._release_browser(playwright, browser)
                logger.info("Browser session released")


@lru_cache()
def get_session_manager() -> BrowserSessionManager:
    return BrowserSessionManager()
