"""Capture the current text selection by simulating a copy command.

The coordinator asks the foreground application to copy its selection,
watches the clipboard for a change and finally puts the user's previous
clipboard content back, so the capture is read-only from the user's point of
view.
"""

from __future__ import annotations

import enum
import logging
import sys
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional, Union

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - handled in ClipboardCaptureCoordinator
    pyperclip = None  # type: ignore

try:  # pragma: no cover - optional dependency for synthetic key presses
    import keyboard  # type: ignore
except ImportError:  # pragma: no cover - handled in send_copy_shortcut
    keyboard = None  # type: ignore


DEFAULT_TIMEOUT_MS = 600
DEFAULT_POLL_INTERVAL = 0.12  # Seconds between two clipboard checks.
MIN_TEXT_LENGTH = 3

_FNV_OFFSET_BASIS = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_FNV_MASK = 0xFFFFFFFFFFFFFFFF

logger = logging.getLogger("translatesutra.capture")


class Degradation(enum.Enum):
    """Reason why a capture fell back or produced no text."""

    UNSUPPORTED_PLATFORM = "unsupported_platform"
    CLIPBOARD_ACCESS_DENIED = "clipboard_access_denied"
    TIMEOUT = "timeout"
    TOO_SHORT = "too_short"
    BUSY = "busy"
    CANCELLED = "cancelled"


class UnsupportedPlatformError(RuntimeError):
    """Raised when synthetic key presses cannot be sent on this system."""


@dataclass(frozen=True)
class CapturedText:
    text: str


@dataclass(frozen=True)
class Empty:
    """No usable text; the caller should hint the user to select something."""

    reason: Optional[Degradation] = None


CaptureResult = Union[CapturedText, Empty]


@dataclass
class CaptureSession:
    """State of one capture, from trigger to clipboard restoration."""

    baseline_fingerprint: str
    original_clipboard: Optional[str]
    started_at: float
    timeout_ms: int
    result_text: Optional[str] = None

    @property
    def restorable(self) -> bool:
        return self.original_clipboard is not None


def fingerprint(text: str) -> str:
    """Return a 64 bit FNV-1a hash of ``text`` as a hex string.

    Only used to notice that the clipboard changed, so collisions are merely
    a missed capture rather than a correctness problem.
    """

    value = _FNV_OFFSET_BASIS
    for byte in text.encode("utf-8", errors="surrogatepass"):
        value ^= byte
        value = (value * _FNV_PRIME) & _FNV_MASK
    return f"{value:016x}"


def send_copy_shortcut() -> None:
    """Press the platform copy shortcut in the foreground window.

    Keys the user still holds from the trigger hotkey are released first and
    pressed again afterwards, otherwise Ctrl+Shift+T turns the copy into
    Ctrl+Shift+C.
    """

    if keyboard is None:
        raise UnsupportedPlatformError("The 'keyboard' package is not installed")
    combo = "command+c" if sys.platform == "darwin" else "ctrl+c"
    try:
        held = keyboard.stash_state()
        try:
            keyboard.send(combo)
        finally:
            keyboard.restore_modifiers(held)
    except ImportError as exc:  # keyboard raises ImportError when it lacks privileges
        raise UnsupportedPlatformError(str(exc)) from exc


def _wait_on_event(event: threading.Event, seconds: float) -> bool:
    return event.wait(seconds)


class ClipboardCaptureCoordinator:
    """Serialised capture-restore-timeout protocol over the system clipboard."""

    def __init__(
        self,
        clipboard_module=pyperclip,
        *,
        copy_shortcut: Callable[[], None] = send_copy_shortcut,
        time_provider: Callable[[], float] = time.monotonic,
        wait: Callable[[threading.Event, float], bool] = _wait_on_event,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        min_text_length: int = MIN_TEXT_LENGTH,
    ) -> None:
        if clipboard_module is None:
            raise RuntimeError(
                "The 'pyperclip' package is required. Install it with 'pip install pyperclip'."
            )
        self._clipboard = clipboard_module
        self._copy_shortcut = copy_shortcut
        self._time_provider = time_provider
        self._wait = wait
        self.timeout_ms = timeout_ms
        self.poll_interval = poll_interval
        self.min_text_length = min_text_length
        self._in_flight = threading.Lock()
        self._shutdown = threading.Event()
        self._session: Optional[CaptureSession] = None

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    def shutdown(self) -> None:
        """Abandon any running poll loop and refuse further captures."""

        self._shutdown.set()

    def submit(self, timeout_ms: Optional[int] = None) -> "Future[CaptureResult]":
        """Run :meth:`capture_selection` on a background thread."""

        future: "Future[CaptureResult]" = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.capture_selection(timeout_ms))
            except BaseException as exc:  # pragma: no cover - capture_selection does not raise
                future.set_exception(exc)

        threading.Thread(target=run, name="ClipboardCapture", daemon=True).start()
        return future

    def capture_selection(self, timeout_ms: Optional[int] = None) -> CaptureResult:
        """Capture the foreground selection, falling back to the clipboard text.

        A call made while another capture is in flight is rejected with
        ``Empty(Degradation.BUSY)`` and leaves the clipboard alone.
        """

        if self._shutdown.is_set():
            return Empty(Degradation.CANCELLED)
        if not self._in_flight.acquire(blocking=False):
            logger.info("Capture already in progress; ignoring trigger")
            return Empty(Degradation.BUSY)
        try:
            return self._run_session(self.timeout_ms if timeout_ms is None else timeout_ms)
        finally:
            self._session = None
            self._in_flight.release()

    def _run_session(self, timeout_ms: int) -> CaptureResult:
        original = self._read_clipboard()
        degradation: Optional[Degradation] = None
        if original is None:
            degradation = Degradation.CLIPBOARD_ACCESS_DENIED
        session = CaptureSession(
            baseline_fingerprint=fingerprint(original or ""),
            original_clipboard=original,
            started_at=self._time_provider(),
            timeout_ms=timeout_ms,
        )
        self._session = session

        copy_failure = self._issue_copy()
        if copy_failure is None:
            outcome = self._poll(session)
            if outcome is Degradation.CANCELLED:
                logger.info("Capture abandoned during shutdown; clipboard not restored")
                return Empty(Degradation.CANCELLED)
            degradation = degradation or outcome
        else:
            degradation = copy_failure

        self._restore(session)

        effective = (session.result_text or "").strip() or (original or "").strip()
        if not effective:
            logger.info("No text captured (%s)", (degradation or Degradation.TIMEOUT).value)
            return Empty(degradation or Degradation.TIMEOUT)
        if len(effective) < self.min_text_length:
            logger.info("Captured text shorter than %d characters", self.min_text_length)
            return Empty(Degradation.TOO_SHORT)
        if degradation is not None:
            logger.debug("Using clipboard fallback (%s)", degradation.value)
        return CapturedText(effective)

    def _issue_copy(self) -> Optional[Degradation]:
        try:
            self._copy_shortcut()
        except UnsupportedPlatformError as exc:
            logger.info("Synthetic copy unavailable: %s", exc)
            return Degradation.UNSUPPORTED_PLATFORM
        except Exception as exc:
            logger.warning("Synthetic copy failed: %s", exc)
            return Degradation.UNSUPPORTED_PLATFORM
        return None

    def _poll(self, session: CaptureSession) -> Optional[Degradation]:
        deadline = session.timeout_ms / 1000.0
        while True:
            if self._wait(self._shutdown, self.poll_interval):
                return Degradation.CANCELLED
            current = self._read_clipboard()
            if current and fingerprint(current) != session.baseline_fingerprint:
                session.result_text = current
                return None
            if self._time_provider() - session.started_at >= deadline:
                return Degradation.TIMEOUT

    def _restore(self, session: CaptureSession) -> None:
        if not session.restorable:
            return
        try:
            self._clipboard.copy(session.original_clipboard)
        except Exception as exc:
            logger.warning("Failed to restore clipboard: %s", exc)

    def _read_clipboard(self) -> Optional[str]:
        try:
            text = self._clipboard.paste()
        except Exception as exc:
            if pyperclip is not None and isinstance(exc, pyperclip.PyperclipException):
                logger.warning("Failed to read clipboard: %s", exc)
            else:
                logger.warning("Unexpected error while accessing clipboard: %s", exc)
            return None
        return text if isinstance(text, str) else ""
