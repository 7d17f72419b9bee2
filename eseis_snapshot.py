"""
Eseis Snapshot Module

Renders Eseis web pages that have no downloadable document (reports, forum
topics) to PDF. A single browser is started on first use, logged into the
Eseis web client once, and reused for every snapshot of the run.

Usage:
    from eseis_snapshot import REPORT_PAGE, PlaywrightDriver, SnapshotPipeline

    driver = PlaywrightDriver()
    with SnapshotPipeline(driver, web_url, username, password) as pipeline:
        pdf_bytes = pipeline.snapshot(report_url, REPORT_PAGE)
"""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright
from playwright_stealth import Stealth

from eseis_errors import SnapshotError

logger = logging.getLogger(__name__)

LOGIN_VIEWPORT = (799, 799)
USERNAME_SELECTOR = '#login-username'
PASSWORD_SELECTOR = '#login-password'
# Co-owner balance widget, only rendered once logged in
AUTHENTICATED_SELECTOR = '.sc-eHWfIC'

MENU_BANNER_SELECTOR = '.sc-kLDuD'
MENU_PADDING_SELECTOR = '.sc-qFupO'


class BrowserDriver(Protocol):
    """The browser operations the snapshot pipeline relies on."""

    def set_viewport(self, width: int, height: int) -> None: ...

    def navigate(self, url: str) -> None: ...

    def wait_for(self, selector: str, state: str = 'attached') -> None: ...

    def type_and_submit(self, selector: str, text: str) -> None: ...

    def evaluate(self, script: str) -> object: ...

    def pause(self, seconds: float) -> None: ...

    def print_to_pdf(self) -> bytes: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class SnapshotTarget:
    """What to wait for and what to strip before printing a page."""

    wait_selectors: tuple[str, ...]
    remove_selectors: tuple[str, ...] = ()
    unpad_selectors: tuple[str, ...] = ()
    settle_seconds: float = 0.0


REPORT_PAGE = SnapshotTarget(
    wait_selectors=(
        '.sc-jQAxuV',  # title
        '.sc-eDdKWq',  # author
        '.sc-eHEENL',  # report description
        '.sc-dWBRfb',  # comment
    ),
    remove_selectors=(MENU_BANNER_SELECTOR,),
    unpad_selectors=(MENU_PADDING_SELECTOR,),
)

FORUM_PAGE = SnapshotTarget(
    wait_selectors=(
        '.sc-jQAxuV',  # title
        '.sc-eDdKWq',  # author
        '.sc-jOFryr',  # topic body
    ),
    remove_selectors=(MENU_BANNER_SELECTOR,),
    unpad_selectors=(MENU_PADDING_SELECTOR,),
    settle_seconds=2.0,
)


def remove_element_script(selector: str) -> str:
    return (
        f'(() => {{ const node = document.querySelector({json.dumps(selector)}); '
        'if (node && node.parentNode) { node.parentNode.removeChild(node); } '
        'return true; })()'
    )


def remove_padding_left_script(selector: str) -> str:
    return (
        f'(() => {{ const node = document.querySelector({json.dumps(selector)}); '
        "if (node) { node.style.paddingLeft = '0'; } "
        'return true; })()'
    )


class SessionState(enum.Enum):
    UNAUTHENTICATED = 'unauthenticated'
    AUTHENTICATED = 'authenticated'
    SNAPSHOTTING = 'snapshotting'
    CLOSED = 'closed'


class SnapshotPipeline:
    """
    Logs into the Eseis web client and prints pages to PDF, one at a time.

    The browser session is not safe for concurrent navigation: a snapshot
    requested while another is in flight is refused.
    """

    def __init__(
        self,
        driver: BrowserDriver,
        web_url: str,
        username: str,
        password: str,
    ) -> None:
        self.driver = driver
        self.web_url = web_url
        self.username = username
        self.password = password
        self.state = SessionState.UNAUTHENTICATED

    def login(self) -> None:
        if self.state is SessionState.CLOSED:
            raise SnapshotError('Browser session is closed')
        if self.state is not SessionState.UNAUTHENTICATED:
            return

        logger.info('Logging into Eseis web client at %s', self.web_url)
        try:
            self.driver.set_viewport(*LOGIN_VIEWPORT)
            self.driver.navigate(self.web_url)
            self.driver.wait_for(USERNAME_SELECTOR, state='visible')
            self.driver.type_and_submit(USERNAME_SELECTOR, self.username)
            self.driver.wait_for(PASSWORD_SELECTOR, state='visible')
            self.driver.type_and_submit(PASSWORD_SELECTOR, self.password)
            self.driver.wait_for(AUTHENTICATED_SELECTOR, state='visible')
        except Exception as e:
            self.close()
            raise SnapshotError(f'Web login failed: {e}') from e

        self.state = SessionState.AUTHENTICATED
        logger.info('Web session authenticated')

    def snapshot(self, url: str, target: SnapshotTarget) -> bytes:
        """Navigate to url, wait for target's content, and return the page as PDF bytes."""
        if self.state is SessionState.SNAPSHOTTING:
            raise SnapshotError('A snapshot is already in progress')
        self.login()

        self.state = SessionState.SNAPSHOTTING
        logger.debug('Snapshotting %s', url)
        try:
            self.driver.navigate(url)
            for selector in target.wait_selectors:
                self.driver.wait_for(selector)
            for selector in target.remove_selectors:
                self.driver.evaluate(remove_element_script(selector))
            for selector in target.unpad_selectors:
                self.driver.evaluate(remove_padding_left_script(selector))
            if target.settle_seconds:
                self.driver.pause(target.settle_seconds)
            pdf = self.driver.print_to_pdf()
        except Exception as e:
            raise SnapshotError(f'Failed to snapshot {url}: {e}') from e
        finally:
            if self.state is SessionState.SNAPSHOTTING:
                self.state = SessionState.AUTHENTICATED

        if not pdf:
            raise SnapshotError(f'Browser returned an empty PDF for {url}')
        return pdf

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.driver.close()

    def __enter__(self) -> SnapshotPipeline:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class PlaywrightDriver:
    """
    BrowserDriver backed by a Playwright Chromium instance.

    The browser is launched lazily on the first call and kept alive until
    close(). Chromium always runs headless, the only mode in which it can
    print a page to PDF.
    """

    def __init__(self, timeout: int = 60000) -> None:
        self.timeout = timeout
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    def _ensure_page(self):
        if self._page is not None:
            return self._page

        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=True)
            self._context = self._browser.new_context(
                viewport={'width': LOGIN_VIEWPORT[0], 'height': LOGIN_VIEWPORT[1]},
            )
            self._page = self._context.new_page()
            Stealth().apply_stealth_sync(self._page)
        except PlaywrightError as e:
            self.close()
            error_msg = str(e)
            if "Executable doesn't exist" in error_msg:
                raise SnapshotError(
                    'Chromium is not installed for Playwright. Try running:\n'
                    '  uv run playwright install chromium\n\n'
                    f'Original error: {e}'
                ) from e
            raise SnapshotError(f'Failed to start browser: {e}') from e

        self._page.set_default_timeout(self.timeout)
        return self._page

    def set_viewport(self, width: int, height: int) -> None:
        self._ensure_page().set_viewport_size({'width': width, 'height': height})

    def navigate(self, url: str) -> None:
        self._ensure_page().goto(url, wait_until='load', timeout=self.timeout)

    def wait_for(self, selector: str, state: str = 'attached') -> None:
        self._ensure_page().wait_for_selector(selector, state=state, timeout=self.timeout)

    def type_and_submit(self, selector: str, text: str) -> None:
        page = self._ensure_page()
        page.fill(selector, text)
        page.press(selector, 'Enter')

    def evaluate(self, script: str) -> object:
        return self._ensure_page().evaluate(script)

    def pause(self, seconds: float) -> None:
        time.sleep(seconds)

    def print_to_pdf(self) -> bytes:
        return self._ensure_page().pdf()

    def close(self) -> None:
        """Close the browser and stop playwright, even if the browser already crashed."""
        try:
            if self._browser:
                try:
                    self._browser.close()
                except PlaywrightError as e:
                    logger.warning('Failed to close browser: %s', e)
        finally:
            self._browser = None
            self._context = None
            self._page = None
            if self._playwright:
                playwright, self._playwright = self._playwright, None
                try:
                    playwright.stop()
                except PlaywrightError as e:
                    logger.warning('Failed to stop playwright: %s', e)
