"""Playwright implementation of the browser launcher and meeting driver.

The launcher starts headless Chromium processes with the media flags a
recording bot needs (auto-accepted device prompts, autoplay without a user
gesture). The driver opens one context/page per session inside a pooled
browser and maps field roles and click intents to ordered selector lists
for the Zoom web client. Audio probing and capture run as page scripts:
the selected stream is parked on ``window.__meetbotStream`` and recorded
with MediaRecorder in 1s slices that are handed back as base64 text.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.meetbot.bots.schemas import AudioSource
from src.meetbot.meeting_client.driver import ClickIntent, FieldRole, RawAudioChunk, UIState

logger = structlog.get_logger(__name__)

# ── Browser Launcher ─────────────────────────────────────────────────────────

CHROMIUM_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--use-fake-ui-for-media-stream",
    "--use-fake-device-for-media-stream",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-features=SyncPromo",
    "--mute-audio",
]


class PlaywrightBrowserLauncher:
    """Launches Chromium processes from a single shared Playwright driver.

    Args:
        headless: Run browsers without a display.
    """

    def __init__(self, headless: bool = True) -> None:
        self._headless = headless
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()

    async def _ensure_playwright(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright

    async def launch(self) -> Browser:
        playwright = await self._ensure_playwright()
        browser = await playwright.chromium.launch(
            headless=self._headless,
            args=CHROMIUM_ARGS,
            ignore_default_args=["--enable-automation"],
        )
        logger.info("playwright.browser_launched", headless=self._headless)
        return browser

    async def close(self, browser: Browser) -> None:
        await browser.close()

    async def stop(self) -> None:
        """Stop the shared Playwright driver after all browsers are closed."""
        async with self._lock:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


# ── Selectors ────────────────────────────────────────────────────────────────

FIELD_SELECTORS: dict[FieldRole, list[str]] = {
    FieldRole.DISPLAY_NAME: [
        "#input-for-name",
        ".webclient-name-input",
        'input[placeholder*="name" i]',
        'input[aria-label*="name" i]',
        "#inputname",
        'input[name="name"]',
    ],
    FieldRole.PASSCODE: [
        "#input-for-pwd",
        ".webclient-password-input",
        'input[type="password"]',
        'input[placeholder*="passcode" i]',
        "#inputpasscode",
    ],
}

CLICK_SELECTORS: dict[ClickIntent, list[str]] = {
    ClickIntent.JOIN: [
        ".webclient-join-btn",
        ".preview-join-button",
        'button[aria-label*="join" i]',
        "#joinBtn",
        ".join-btn",
        'button:has-text("Join")',
    ],
    ClickIntent.JOIN_AUDIO: [
        'button:has-text("Join Audio by Computer")',
        'button:has-text("Join with Computer Audio")',
        'button[aria-label*="join audio" i]',
        ".join-audio-by-voip__join-btn",
    ],
    ClickIntent.DISMISS_DIALOG: [
        'button[aria-label*="close" i]',
        'button:has-text("Got it")',
        'button:has-text("OK")',
    ],
    ClickIntent.LEAVE: [
        'button[aria-label*="leave" i]',
        'button:has-text("Leave")',
        'button:has-text("Leave Meeting")',
    ],
}

SELECTOR_WAIT_MS = 2000

# ── Page Scripts ─────────────────────────────────────────────────────────────

UI_STATE_JS = """
() => {
  const bodyText = (document.body && document.body.textContent || '').toLowerCase();
  const endPhrases = [
    'this meeting has been ended by the host',
    'the meeting has ended',
    'meeting has been ended',
    'you have been removed from the meeting',
    'the host has ended this meeting for everyone',
  ];
  const liveSelectors = [
    '.meeting-client-view', '.webclient-meeting-view', '.zm-video-container',
    '[class*="meeting-controls"]', '[class*="footer-button-base"]',
    'button[aria-label*="mute" i]', 'button[aria-label*="leave" i]',
  ];
  const live = liveSelectors.filter(s => document.querySelectorAll(s).length > 0).length;
  const url = window.location.href;
  const errorNode = document.querySelector('.error-message, [class*="join-error"], [role="alert"]');
  return {
    in_meeting: live >= 2,
    waiting_room: bodyText.includes('waiting room') || bodyText.includes('waiting for the host'),
    end_message: endPhrases.some(p => bodyText.includes(p)),
    on_exit_page: url.includes('/leave') || url.includes('/postattendee') ||
      bodyText.includes('thank you for joining') || bodyText.includes('you have left the meeting'),
    live_element_count: live,
    error_text: errorNode ? errorNode.textContent.trim().slice(0, 200) : null,
  };
}
"""

PROBE_SCRIPTS: dict[AudioSource, str] = {
    AudioSource.VIDEO: """
() => {
  for (const el of document.querySelectorAll('video')) {
    const s = el.srcObject;
    if (s && s.getAudioTracks().some(t => t.readyState === 'live')) {
      window.__meetbotStream = s; return true;
    }
  }
  return false;
}
""",
    AudioSource.AUDIO: """
() => {
  for (const el of document.querySelectorAll('audio')) {
    const s = el.srcObject;
    if (s && s.active && s.getAudioTracks().length > 0) {
      window.__meetbotStream = s; return true;
    }
  }
  return false;
}
""",
    AudioSource.GLOBAL_HANDLE: """
() => {
  const names = ['localStream', 'remoteStream', 'meetingStream', 'audioStream',
                 'participantStream', 'sharedStream', 'mainStream'];
  for (const n of names) {
    const s = window[n];
    if (s instanceof MediaStream && s.getAudioTracks().length > 0) {
      window.__meetbotStream = s; return true;
    }
  }
  return false;
}
""",
    AudioSource.SCREEN_CAPTURE: """
async () => {
  if (!navigator.mediaDevices || !navigator.mediaDevices.getDisplayMedia) return false;
  try {
    const s = await navigator.mediaDevices.getDisplayMedia({ audio: true, video: true });
    if (s.getAudioTracks().length === 0) { s.getTracks().forEach(t => t.stop()); return false; }
    window.__meetbotStream = new MediaStream(s.getAudioTracks());
    return true;
  } catch (e) { return false; }
}
""",
}

SYNTHETIC_SOURCE_JS = """
() => {
  const ctx = new (window.AudioContext || window.webkitAudioContext)();
  const osc = ctx.createOscillator();
  const gain = ctx.createGain();
  const dest = ctx.createMediaStreamDestination();
  osc.frequency.value = 1000;
  gain.gain.value = 0.0001;
  osc.connect(gain);
  gain.connect(dest);
  osc.start();
  window.__meetbotSynthetic = { ctx, osc };
  window.__meetbotStream = dest.stream;
  return true;
}
"""

START_CAPTURE_JS = """
(timeslice) => {
  const stream = window.__meetbotStream;
  if (!stream) throw new Error('no audio stream selected');
  const audioOnly = new MediaStream(stream.getAudioTracks());
  const mime = MediaRecorder.isTypeSupported('audio/webm;codecs=opus') ? 'audio/webm;codecs=opus' : 'audio/webm';
  window.__meetbotChunks = [];
  window.__meetbotSeq = 0;
  window.__meetbotPending = 0;
  const rec = new MediaRecorder(audioOnly, { mimeType: mime });
  rec.ondataavailable = async (e) => {
    if (!e.data || e.data.size === 0) return;
    const seq = window.__meetbotSeq++;
    const ts = Date.now();
    window.__meetbotPending++;
    try {
      const bytes = new Uint8Array(await e.data.arrayBuffer());
      let binary = '';
      for (let i = 0; i < bytes.length; i++) binary += String.fromCharCode(bytes[i]);
      window.__meetbotChunks.push({ sequence: seq, timestamp_ms: ts, payload: btoa(binary) });
    } catch (err) {
      window.__meetbotChunks.push({ sequence: seq, timestamp_ms: ts, payload: '' });
    } finally {
      window.__meetbotPending--;
    }
  };
  rec.start(timeslice);
  window.__meetbotRecorder = rec;
  return mime;
}
"""

DRAIN_CHUNKS_JS = """
() => {
  const out = window.__meetbotChunks || [];
  window.__meetbotChunks = [];
  return out;
}
"""

STOP_CAPTURE_JS = """
() => new Promise((resolve) => {
  const drain = () => { const out = window.__meetbotChunks || []; window.__meetbotChunks = []; return out; };
  const rec = window.__meetbotRecorder;
  const finish = () => {
    if (window.__meetbotSynthetic) {
      try { window.__meetbotSynthetic.osc.stop(); window.__meetbotSynthetic.ctx.close(); } catch (e) {}
      window.__meetbotSynthetic = null;
    }
    const wait = () => (window.__meetbotPending > 0 ? setTimeout(wait, 50) : resolve(drain()));
    wait();
  };
  if (!rec || rec.state === 'inactive') { finish(); return; }
  rec.onstop = finish;
  rec.stop();
})
"""

CAPTURE_TIMESLICE_MS = 1000


# ── Meeting Driver ───────────────────────────────────────────────────────────


class PlaywrightMeetingDriver:
    """Meeting client driver backed by a Playwright page.

    Args:
        browser: Pooled Playwright browser to open a context in.
        navigation_timeout: Seconds allowed for page navigation.
    """

    def __init__(self, browser: Browser, navigation_timeout: float = 60.0) -> None:
        self._browser = browser
        self._navigation_timeout_ms = int(navigation_timeout * 1000)
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def page(self) -> Page:
        if self._page is None:
            msg = "driver is not open"
            raise RuntimeError(msg)
        return self._page

    async def open(self) -> None:
        self._context = await self._browser.new_context(
            permissions=["microphone", "camera"],
            viewport={"width": 1280, "height": 720},
        )
        self._page = await self._context.new_page()

    async def navigate(self, url: str) -> None:
        await self.page.goto(url, wait_until="domcontentloaded", timeout=self._navigation_timeout_ms)

    async def fill_field(self, role: FieldRole, value: str) -> bool:
        for selector in FIELD_SELECTORS[role]:
            try:
                await self.page.wait_for_selector(selector, timeout=SELECTOR_WAIT_MS)
                await self.page.fill(selector, value)
            except (PlaywrightTimeoutError, PlaywrightError):
                continue
            logger.debug("playwright.field_filled", role=role.value, selector=selector)
            return True
        logger.info("playwright.field_not_found", role=role.value)
        return False

    async def click_by_intent(self, intent: ClickIntent) -> bool:
        for selector in CLICK_SELECTORS[intent]:
            try:
                await self.page.click(selector, timeout=SELECTOR_WAIT_MS)
            except (PlaywrightTimeoutError, PlaywrightError):
                continue
            logger.debug("playwright.clicked", intent=intent.value, selector=selector)
            return True
        logger.info("playwright.click_target_not_found", intent=intent.value)
        return False

    async def query_ui_state(self) -> UIState:
        data: dict[str, Any] = await self.page.evaluate(UI_STATE_JS)
        return UIState(**data)

    async def probe_audio_source(self, source: AudioSource) -> bool:
        script = PROBE_SCRIPTS.get(source)
        if script is None:
            return False
        return bool(await self.page.evaluate(script))

    async def create_synthetic_source(self) -> None:
        await self.page.evaluate(SYNTHETIC_SOURCE_JS)

    async def start_capture(self, source: AudioSource) -> str:
        mime_type = await self.page.evaluate(START_CAPTURE_JS, CAPTURE_TIMESLICE_MS)
        logger.info("playwright.capture_started", source=source.value, mime_type=mime_type)
        return mime_type

    async def drain_chunks(self) -> list[RawAudioChunk]:
        return [RawAudioChunk(**c) for c in await self.page.evaluate(DRAIN_CHUNKS_JS)]

    async def stop_capture(self) -> list[RawAudioChunk]:
        return [RawAudioChunk(**c) for c in await self.page.evaluate(STOP_CAPTURE_JS)]

    async def close(self) -> None:
        context, self._context, self._page = self._context, None, None
        if context is not None:
            await context.close()


def playwright_driver_factory(navigation_timeout: float = 60.0):
    """Return a factory building a driver from a pooled browser handle."""

    def _factory(handle):
        return PlaywrightMeetingDriver(handle.browser, navigation_timeout=navigation_timeout)

    return _factory
