"""Playwright browser adapter — one shared Chromium, one context per attempt.

Registration attempts get a fresh, isolated browser context (no cookies
carried between events) and the number of pages open at once is bounded by
BROWSER_CONCURRENCY.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from playwright.async_api import Browser, Page, Playwright, async_playwright

from family_planner.core.payment_guard import FormField, PageSnapshot

logger = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Collected in the page so the guard sees exactly what the browser sees
_SNAPSHOT_JS = """
() => {
  const labelFor = (el) => {
    if (el.id) {
      const l = document.querySelector(`label[for="${CSS.escape(el.id)}"]`);
      if (l) return l.textContent.trim();
    }
    const parent = el.closest('label');
    return parent ? parent.textContent.trim() : '';
  };
  const fields = Array.from(document.querySelectorAll('input, select, textarea'))
    .filter((el) => el.type !== 'hidden')
    .map((el) => ({
      name: el.name || '',
      id: el.id || '',
      type: el.type || el.tagName.toLowerCase(),
      placeholder: el.placeholder || '',
      autocomplete: el.getAttribute('autocomplete') || '',
      label: labelFor(el),
    }));
  const buttons = Array.from(
    document.querySelectorAll('button, input[type="submit"], input[type="button"], a[role="button"]')
  ).map((el) => (el.innerText || el.value || '').trim()).filter(Boolean);
  const frames = Array.from(document.querySelectorAll('iframe')).map((f) => f.src || '');
  return {
    text: document.body ? document.body.innerText : '',
    fields,
    buttons,
    frames,
  };
}
"""


async def snapshot_page(page: Page, declared_cost: object) -> PageSnapshot:
    """Capture what the payment guard inspects right before submit."""
    data = await page.evaluate(_SNAPSHOT_JS)
    frames = list(data.get("frames", []))
    # Cross-origin frames are not visible to document.querySelectorAll contents
    frames.extend(f.url for f in page.frames if f.url and f.url not in frames)
    return PageSnapshot(
        url=page.url,
        text=data.get("text", ""),
        fields=[FormField(**f) for f in data.get("fields", [])],
        buttons=list(data.get("buttons", [])),
        frames=frames,
        declared_cost=declared_cost,
    )


class PlaywrightBrowser:
    """Owns the Playwright driver and hands out bounded, isolated pages."""

    def __init__(self, concurrency: int = 2, page_timeout_seconds: int = 30, headless: bool = True) -> None:
        self._semaphore = asyncio.Semaphore(concurrency)
        self._timeout_ms = page_timeout_seconds * 1000
        self._headless = headless
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._start_lock = asyncio.Lock()

    async def start(self) -> None:
        async with self._start_lock:
            if self._browser is not None:
                return
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
            logger.info("Chromium launched (headless=%s)", self._headless)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Chromium closed")

    @asynccontextmanager
    async def new_page(self) -> AsyncIterator[Page]:
        """Yield a page in a fresh context; waits for a free browser slot."""
        async with self._semaphore:
            await self.start()
            context = await self._browser.new_context(
                viewport={"width": 1280, "height": 900},
                user_agent=_USER_AGENT,
            )
            context.set_default_timeout(self._timeout_ms)
            try:
                page = await context.new_page()
                yield page
            finally:
                await context.close()
