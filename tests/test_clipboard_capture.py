import sys
import threading
import unittest
from unittest import mock

from clipboard_capture import (
    CaptureSession,
    CapturedText,
    ClipboardCaptureCoordinator,
    Degradation,
    Empty,
    UnsupportedPlatformError,
    fingerprint,
    send_copy_shortcut,
)


class FakeTime:
    def __init__(self) -> None:
        self._value = 0.0

    def advance(self, amount: float) -> None:
        self._value += amount

    def now(self) -> float:
        return self._value


class FakeClipboard:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.writes: list[str] = []
        self.reads = 0
        self._scheduled: list[tuple[float, str]] = []

    def paste(self) -> str:
        self.reads += 1
        return self.text

    def copy(self, text: str) -> None:
        self.writes.append(text)
        self.text = text

    def schedule(self, at: float, text: str) -> None:
        self._scheduled.append((at, text))

    def apply_due(self, now: float) -> None:
        due = [item for item in self._scheduled if item[0] <= now]
        for item in due:
            self._scheduled.remove(item)
            self.text = item[1]


class FakeWaiter:
    """Advances fake time instead of sleeping and applies scheduled clipboard changes."""

    def __init__(self, fake_time: FakeTime, clipboard: FakeClipboard) -> None:
        self.fake_time = fake_time
        self.clipboard = clipboard
        self.ticks = 0
        self.on_tick = None

    def __call__(self, event: threading.Event, seconds: float) -> bool:
        if event.is_set():
            return True
        self.ticks += 1
        self.fake_time.advance(seconds)
        self.clipboard.apply_due(self.fake_time.now())
        if self.on_tick is not None:
            self.on_tick(self.ticks)
        return event.is_set()


class CoordinatorTestMixin:
    def _create(self, clipboard_text: str = "old", copy_shortcut=None, **overrides):
        self.fake_time = FakeTime()
        self.clipboard = FakeClipboard(clipboard_text)
        self.waiter = FakeWaiter(self.fake_time, self.clipboard)
        defaults = dict(
            copy_shortcut=copy_shortcut or (lambda: None),
            time_provider=self.fake_time.now,
            wait=self.waiter,
            timeout_ms=600,
            poll_interval=0.12,
        )
        defaults.update(overrides)
        return ClipboardCaptureCoordinator(self.clipboard, **defaults)


class FingerprintTests(unittest.TestCase):
    def test_fingerprint_is_stable_for_same_text(self):
        self.assertEqual(fingerprint("Bonjour le monde"), fingerprint("Bonjour le monde"))

    def test_fingerprint_matches_fnv1a_reference_values(self):
        self.assertEqual(fingerprint(""), "cbf29ce484222325")
        self.assertEqual(fingerprint("a"), "af63dc4c8601ec8c")

    def test_fingerprint_differs_for_different_text(self):
        self.assertNotEqual(fingerprint("old"), fingerprint("olds"))

    def test_fingerprint_handles_non_ascii(self):
        self.assertEqual(len(fingerprint("こんにちは")), 16)


class CaptureSelectionTests(CoordinatorTestMixin, unittest.TestCase):
    def test_changed_clipboard_is_captured_and_baseline_restored(self):
        coordinator = self._create(
            "old", copy_shortcut=lambda: self.clipboard.schedule(0.2, "Bonjour le monde")
        )

        result = coordinator.capture_selection()

        self.assertEqual(result, CapturedText("Bonjour le monde"))
        self.assertEqual(self.clipboard.text, "old")
        self.assertEqual(self.clipboard.writes, ["old"])
        self.assertLess(self.fake_time.now(), 0.6)

    def test_captured_text_is_trimmed(self):
        coordinator = self._create(
            "old", copy_shortcut=lambda: self.clipboard.schedule(0.1, "  selected words \n")
        )
        self.assertEqual(coordinator.capture_selection(), CapturedText("selected words"))

    def test_unchanged_clipboard_falls_back_after_timeout(self):
        coordinator = self._create("  hello world ")

        result = coordinator.capture_selection()

        self.assertEqual(result, CapturedText("hello world"))
        self.assertGreaterEqual(self.fake_time.now(), 0.6)
        self.assertEqual(self.clipboard.text, "  hello world ")

    def test_empty_clipboard_without_selection_returns_empty(self):
        coordinator = self._create("")

        result = coordinator.capture_selection()

        self.assertIsInstance(result, Empty)
        self.assertEqual(result.reason, Degradation.TIMEOUT)
        self.assertEqual(self.clipboard.text, "")
        self.assertGreaterEqual(self.fake_time.now(), 0.6)

    def test_short_clipboard_returns_empty(self):
        coordinator = self._create(" ab ")
        self.assertEqual(coordinator.capture_selection(), Empty(Degradation.TOO_SHORT))
        self.assertEqual(self.clipboard.text, " ab ")

    def test_whitespace_selection_falls_back_to_original_clipboard(self):
        coordinator = self._create(
            "hello there", copy_shortcut=lambda: self.clipboard.schedule(0.1, "  \n ")
        )
        self.assertEqual(coordinator.capture_selection(), CapturedText("hello there"))
        self.assertEqual(self.clipboard.text, "hello there")

    def test_unsupported_platform_skips_polling(self):
        def unsupported() -> None:
            raise UnsupportedPlatformError("no keyboard backend")

        coordinator = self._create("", copy_shortcut=unsupported)

        result = coordinator.capture_selection()

        self.assertEqual(result, Empty(Degradation.UNSUPPORTED_PLATFORM))
        self.assertEqual(self.waiter.ticks, 0)
        self.assertEqual(self.clipboard.writes, [""])

    def test_failing_copy_shortcut_uses_clipboard_fallback(self):
        def denied() -> None:
            raise PermissionError("accessibility permission missing")

        coordinator = self._create("clipboard text", copy_shortcut=denied)

        with self.assertLogs("translatesutra.capture", level="WARNING"):
            result = coordinator.capture_selection()

        self.assertEqual(result, CapturedText("clipboard text"))
        self.assertEqual(self.clipboard.text, "clipboard text")

    def test_unreadable_clipboard_degrades_without_raising(self):
        class LockedClipboard(FakeClipboard):
            def paste(self) -> str:
                raise RuntimeError("clipboard locked")

        coordinator = self._create()
        locked = LockedClipboard("secret")
        coordinator._clipboard = locked
        self.waiter.clipboard = locked

        with self.assertLogs("translatesutra.capture", level="WARNING"):
            result = coordinator.capture_selection()

        self.assertEqual(result, Empty(Degradation.CLIPBOARD_ACCESS_DENIED))
        self.assertEqual(locked.writes, [])

    def test_restore_failure_is_logged_not_raised(self):
        class ReadOnlyClipboard(FakeClipboard):
            def copy(self, text: str) -> None:
                raise RuntimeError("cannot write")

        coordinator = self._create()
        read_only = ReadOnlyClipboard("old")
        coordinator._clipboard = read_only
        self.waiter.clipboard = read_only
        read_only.schedule(0.1, "new selection")

        with self.assertLogs("translatesutra.capture", level="WARNING") as logs:
            result = coordinator.capture_selection()

        self.assertEqual(result, CapturedText("new selection"))
        self.assertIn("restore", "\n".join(logs.output))

    def test_session_is_cleared_after_capture(self):
        coordinator = self._create("some text")
        seen: list[CaptureSession] = []
        self.waiter.on_tick = lambda _tick: seen.append(coordinator.session)

        coordinator.capture_selection()

        self.assertIsNotNone(seen[0])
        self.assertEqual(seen[0].baseline_fingerprint, fingerprint("some text"))
        self.assertEqual(seen[0].timeout_ms, 600)
        self.assertIsNone(coordinator.session)
        self.assertFalse(coordinator.busy)

    def test_timeout_override_per_call(self):
        coordinator = self._create("fallback text")
        coordinator.capture_selection(timeout_ms=240)
        self.assertAlmostEqual(self.fake_time.now(), 0.24)

    def test_submit_resolves_future_once(self):
        coordinator = self._create(
            "old", copy_shortcut=lambda: self.clipboard.schedule(0.2, "from the future")
        )
        future = coordinator.submit()
        self.assertEqual(future.result(timeout=1), CapturedText("from the future"))
        self.assertEqual(self.clipboard.text, "old")


class NonReentrancyTests(CoordinatorTestMixin, unittest.TestCase):
    def test_second_capture_in_flight_is_rejected(self):
        copy_started = threading.Event()
        release_copy = threading.Event()

        def slow_copy() -> None:
            copy_started.set()
            release_copy.wait(timeout=1)

        coordinator = self._create("old", copy_shortcut=slow_copy)
        results = []
        worker = threading.Thread(target=lambda: results.append(coordinator.capture_selection()))
        worker.start()
        self.assertTrue(copy_started.wait(timeout=1))

        # The foreground app has already put the selection on the clipboard.
        self.clipboard.text = "selected text"
        self.assertTrue(coordinator.busy)
        second = coordinator.capture_selection()

        release_copy.set()
        worker.join(timeout=1)

        self.assertEqual(second, Empty(Degradation.BUSY))
        self.assertEqual(results, [CapturedText("selected text")])
        self.assertEqual(self.clipboard.writes, ["old"])
        self.assertEqual(self.clipboard.text, "old")

    def test_captures_run_again_after_completion(self):
        coordinator = self._create("first clipboard")
        self.assertEqual(coordinator.capture_selection(), CapturedText("first clipboard"))
        self.clipboard.text = "second clipboard"
        self.assertEqual(coordinator.capture_selection(), CapturedText("second clipboard"))


class ShutdownTests(CoordinatorTestMixin, unittest.TestCase):
    def test_shutdown_abandons_poll_without_restoring(self):
        coordinator = self._create("old")
        self.waiter.on_tick = lambda tick: coordinator.shutdown() if tick == 2 else None

        result = coordinator.capture_selection()

        self.assertEqual(result, Empty(Degradation.CANCELLED))
        self.assertEqual(self.waiter.ticks, 2)
        self.assertEqual(self.clipboard.writes, [])
        self.assertFalse(coordinator.busy)

    def test_capture_after_shutdown_does_not_touch_clipboard(self):
        coordinator = self._create("old")
        coordinator.shutdown()

        self.assertEqual(coordinator.capture_selection(), Empty(Degradation.CANCELLED))
        self.assertEqual(self.clipboard.reads, 0)
        self.assertEqual(self.clipboard.writes, [])


class HeldKeysKeyboard:
    """Keyboard stand-in that remembers which keys are physically down."""

    MODIFIERS = {"ctrl", "shift", "alt", "windows", "command"}

    def __init__(self, held) -> None:
        self.held = set(held)
        self.sent: list[tuple[str, frozenset]] = []

    def stash_state(self):
        stashed = sorted(self.held)
        self.held.clear()
        return stashed

    def restore_modifiers(self, stashed) -> None:
        self.held.update(key for key in stashed if key in self.MODIFIERS)

    def send(self, combo: str) -> None:
        self.sent.append((combo, frozenset(self.held)))


class SendCopyShortcutTests(unittest.TestCase):
    def test_trigger_modifiers_are_released_around_the_copy(self):
        fake = HeldKeysKeyboard({"ctrl", "shift"})
        with mock.patch("clipboard_capture.keyboard", fake):
            send_copy_shortcut()

        expected = "command+c" if sys.platform == "darwin" else "ctrl+c"
        self.assertEqual(fake.sent, [(expected, frozenset())])
        self.assertEqual(fake.held, {"ctrl", "shift"})

    def test_modifiers_come_back_when_send_fails(self):
        fake = HeldKeysKeyboard({"ctrl"})
        fake.send = mock.Mock(side_effect=ImportError("need root"))
        with mock.patch("clipboard_capture.keyboard", fake):
            with self.assertRaises(UnsupportedPlatformError):
                send_copy_shortcut()
        self.assertEqual(fake.held, {"ctrl"})

    def test_missing_keyboard_package_is_unsupported(self):
        with mock.patch("clipboard_capture.keyboard", None):
            with self.assertRaises(UnsupportedPlatformError):
                send_copy_shortcut()


if __name__ == "__main__":
    unittest.main()
