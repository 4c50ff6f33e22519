"""Tests for the browser session manager with a fake Playwright driver."""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from finsync.app.account_sync.browser_session import (
    BrowserMode, BrowserSessionManager, HUMAN_TIMEOUT_MS, UNATTENDED_TIMEOUT_MS
)
from finsync.app.account_sync.errors import SessionReleasedError


class FakeCDPSession:

    def __init__(self, live_url):
        self.live_url = live_url
        self.sent = []

    async def send(self, method, params=None):
        self.sent.append(method)
        if self.live_url is None:
            raise PlaywrightError("Unknown method")
        return {"liveURL": self.live_url}


class FakePage:

    def __init__(self, context=None):
        self.context = context
        self.default_timeout = None
        self.navigation_timeout = None

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    def set_default_navigation_timeout(self, ms):
        self.navigation_timeout = ms


class FakeContext:

    def __init__(self, live_url=None):
        self.pages = []
        self.live_url = live_url
        self.cdp_sessions = []

    async def new_cdp_session(self, page):
        session = FakeCDPSession(self.live_url)
        self.cdp_sessions.append(session)
        return session

    async def new_page(self):
        page = FakePage(self)
        self.pages.append(page)
        return page


class FakeBrowser:

    def __init__(self, contexts=None):
        self.contexts = contexts or []
        self.closed = False

    async def new_context(self):
        context = FakeContext()
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeChromium:

    def __init__(self, live_url=None):
        self.live_url = live_url
        self.launches = []
        self.cdp_endpoints = []
        self.browsers = []

    async def launch(self, **kwargs):
        self.launches.append(kwargs)
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser

    async def connect_over_cdp(self, endpoint):
        self.cdp_endpoints.append(endpoint)
        browser = FakeBrowser(contexts=[FakeContext(self.live_url)])
        self.browsers.append(browser)
        return browser


class FakePlaywright:

    def __init__(self, live_url=None):
        self.chromium = FakeChromium(live_url)
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakePlaywrightFactory:
    """Stands in for async_playwright: calling it returns an object with start()."""

    def __init__(self, live_url=None):
        self.live_url = live_url
        self.instances = []

    def __call__(self):
        return self

    async def start(self):
        playwright = FakePlaywright(self.live_url)
        self.instances.append(playwright)
        return playwright


def make_manager(settings, mode, api_key=None, max_sessions=1, live_url=None):
    settings.browser_mode = mode
    settings.browserless_api_key = api_key
    settings.max_browser_sessions = max_sessions
    factory = FakePlaywrightFactory(live_url)
    return BrowserSessionManager(settings=settings, playwright_factory=factory), factory


async def use_session(manager):
    async with manager.acquire() as session:
        return session, session.page


class TestModes:

    def test_containerized_is_headless_with_short_timeout(self, settings) -> None:
        manager, factory = make_manager(settings, "containerized")

        session, page = asyncio.run(use_session(manager))

        (playwright,) = factory.instances
        (launch,) = playwright.chromium.launches
        assert launch['headless'] is True
        assert launch['executable_path'] == "/usr/bin/google-chrome"
        assert "--no-sandbox" in launch['args']
        assert page.default_timeout == UNATTENDED_TIMEOUT_MS
        assert page.navigation_timeout == UNATTENDED_TIMEOUT_MS
        assert not session.allows_human_input
        assert playwright.chromium.browsers[0].closed
        assert playwright.stopped

    def test_local_is_visible_with_long_timeout(self, settings) -> None:
        manager, factory = make_manager(settings, "local")

        session, page = asyncio.run(use_session(manager))

        (launch,) = factory.instances[0].chromium.launches
        assert launch['headless'] is False
        assert page.default_timeout == HUMAN_TIMEOUT_MS
        assert session.allows_human_input
        assert session.live_session_url is None

    def test_remote_cloud_disconnects_without_closing(self, settings) -> None:
        live_url = "https://chrome.browserless.io/live/session-abc"
        manager, factory = make_manager(settings, "remote_cloud", api_key="bl-key", live_url=live_url)

        session, page = asyncio.run(use_session(manager))

        playwright = factory.instances[0]
        (endpoint,) = playwright.chromium.cdp_endpoints
        browser = playwright.chromium.browsers[0]
        assert "token=bl-key" in endpoint
        assert session.live_session_url == live_url
        assert "bl-key" not in session.live_session_url
        assert browser.contexts[0].cdp_sessions[0].sent == ["Browserless.liveURL"]
        assert browser.contexts[0].pages == [page]
        assert page.default_timeout == HUMAN_TIMEOUT_MS
        assert not browser.closed
        assert playwright.stopped

    def test_remote_cloud_without_live_url_support(self, settings) -> None:
        manager, _ = make_manager(settings, "remote_cloud", api_key="bl-key", live_url=None)

        session, _ = asyncio.run(use_session(manager))

        assert session.live_session_url is None
        assert session.allows_human_input

    def test_remote_cloud_without_key_falls_back(self, settings) -> None:
        manager, _ = make_manager(settings, "remote_cloud", api_key=None)

        assert manager.mode == BrowserMode.CONTAINERIZED
        assert manager.timeout_seconds == 120


class TestLifecycle:

    def test_session_released_on_exception(self, settings) -> None:
        manager, factory = make_manager(settings, "containerized")
        captured = []

        async def run():
            async with manager.acquire() as session:
                captured.append(session)
                raise RuntimeError("scrape failed")

        with pytest.raises(RuntimeError):
            asyncio.run(run())

        (session,) = captured
        assert session.released
        assert factory.instances[0].chromium.browsers[0].closed
        assert factory.instances[0].stopped

    def test_released_session_refuses_use(self, settings) -> None:
        manager, _ = make_manager(settings, "containerized")

        session, _ = asyncio.run(use_session(manager))

        with pytest.raises(SessionReleasedError):
            session.page

    def test_concurrent_sessions_are_bounded(self, settings) -> None:
        manager, _ = make_manager(settings, "containerized", max_sessions=1)
        active = []
        peak = []

        async def worker():
            async with manager.acquire():
                active.append(1)
                peak.append(len(active))
                await asyncio.sleep(0.01)
                active.pop()

        async def run():
            await asyncio.gather(worker(), worker(), worker())

        asyncio.run(run())

        assert max(peak) == 1
        assert len(peak) == 3
