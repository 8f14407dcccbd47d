"""Desktop utility that translates the current selection via a global hotkey."""

from __future__ import annotations

import argparse
import contextlib
import copy
import getpass
import json
import logging
import os
import queue
import sys
import tempfile
import threading
import time
import webbrowser
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - handled in TranslateSutraApp
    pyperclip = None  # type: ignore

try:
    import tkinter as tk
    from tkinter import messagebox, scrolledtext, font as tkfont
except ImportError as exc:  # pragma: no cover - tkinter ships with CPython
    raise SystemExit("tkinter is required to display the translation window") from exc

try:  # pragma: no cover - optional dependency for system tray support
    import pystray  # type: ignore
    from pystray import MenuItem  # type: ignore
except Exception:  # pragma: no cover - no usable tray backend (e.g. headless session)
    pystray = None  # type: ignore
    MenuItem = None  # type: ignore

try:  # pragma: no cover - optional dependency for system tray support
    from PIL import Image, ImageDraw  # type: ignore
except ImportError:  # pragma: no cover - handled when starting the tray icon
    Image = None  # type: ignore
    ImageDraw = None  # type: ignore

from logging.handlers import RotatingFileHandler

from clipboard_capture import (
    CaptureResult,
    CapturedText,
    ClipboardCaptureCoordinator,
    Degradation,
    Empty,
)
from hotkey_manager import (
    BaseHotkeyService,
    HotkeyBinding,
    HotkeyEvent,
    KeyboardHotkeyService,
    build_bindings_from_preferences,
)
from translation_service import (
    DEFAULT_BACKEND_URL,
    DEFAULT_LIBRETRANSLATE_URL,
    FALLBACK_LANGUAGES,
    AuthError,
    BackendClient,
    KeyringTokenStore,
    LibreTranslateClient,
    TranslationError,
    TranslationResult,
    TranslationService,
)


MIN_TRIGGER_INTERVAL = 0.15

LOG_FILE_NAME = "translatesutra.log"
LOG_MAX_BYTES = 2_097_152
LOG_BACKUP_COUNT = 3

PREFERENCES_FILE = Path.home() / ".translatesutra_preferences.json"

SELECT_TEXT_HINT = "Select text or copy to clipboard"
TRANSLATION_FAILED_HINT = "Translation failed. Please try again."
SETTINGS_URL = "http://localhost:3001/settings"
ABOUT_URL = "https://github.com/translatesutra/translatesutra"

FLOAT_WINDOW_SIZE = 120
RESULT_WINDOW_SIZE = (400, 300)
DRAG_THRESHOLD = 4
COPY_FEEDBACK_MS = 1500

DEFAULT_PREFERENCES: Dict[str, Any] = {
    "hotkey": "CommandOrControl+Shift+T",
    "float_hotkey": "",
    "target_language": "en",
    "source_language": "auto",
    "window_position": {"x": 100, "y": 100},
    "capture_timeout_ms": 600,
    "poll_interval_ms": 120,
    "min_text_length": 3,
    "result_auto_close_seconds": 15,
    "backend_url": DEFAULT_BACKEND_URL,
    "libretranslate_url": DEFAULT_LIBRETRANSLATE_URL,
}

_OPTIONAL_STRINGS = {"float_hotkey"}
_ENVIRONMENT_OVERRIDES = {
    "backend_url": "BACKEND_URL",
    "libretranslate_url": "LIBRETRANSLATE_URL",
}

logger = logging.getLogger("translatesutra.ui")

LANGUAGE_NAMES = {entry["code"]: entry["name"] for entry in FALLBACK_LANGUAGES}
PICKER_LANGUAGES = [entry for entry in FALLBACK_LANGUAGES if entry["code"] != "auto"]
_NATIVE_NAMES = {entry["code"]: entry["nativeName"] for entry in PICKER_LANGUAGES}


def filter_languages(languages: Sequence[Dict[str, str]], term: str) -> List[Dict[str, str]]:
    """Keep the languages whose code, English or native name contains ``term``."""

    needle = term.strip().lower()
    if not needle:
        return list(languages)
    return [
        entry
        for entry in languages
        if any(needle in entry.get(field, "").lower() for field in ("code", "name", "nativeName"))
    ]


def _picker_label(entry: Dict[str, str]) -> str:
    native = entry.get("nativeName")
    if native and native != entry["name"]:
        return f"{entry['name']} ({native})"
    return entry["name"]


def _get_logger(verbose: bool = False) -> logging.Logger:
    app_logger = logging.getLogger("translatesutra")
    app_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if app_logger.handlers:
        return app_logger

    log_dir = PREFERENCES_FILE.parent
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError:
        handler = None
    if handler is not None:
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    app_logger.addHandler(console)
    return app_logger


def _load_preferences() -> dict:
    try:
        data = json.loads(PREFERENCES_FILE.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _save_preferences(preferences: dict) -> None:
    try:
        PREFERENCES_FILE.parent.mkdir(parents=True, exist_ok=True)
        PREFERENCES_FILE.write_text(json.dumps(preferences, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError:
        pass


def _is_valid_setting(key: str, value: Any) -> bool:
    default = DEFAULT_PREFERENCES[key]
    if key == "window_position":
        return (
            isinstance(value, dict)
            and all(isinstance(value.get(axis), int) and not isinstance(value.get(axis), bool) for axis in ("x", "y"))
        )
    if isinstance(default, int):
        return isinstance(value, int) and not isinstance(value, bool) and value >= 1
    if isinstance(default, str):
        if not isinstance(value, str):
            return False
        return key in _OPTIONAL_STRINGS or bool(value.strip())
    return False


def load_settings() -> dict:
    """Return saved preferences merged over :data:`DEFAULT_PREFERENCES`."""

    result = copy.deepcopy(DEFAULT_PREFERENCES)
    saved = _load_preferences()
    for key in DEFAULT_PREFERENCES:
        value = saved.get(key)
        if value is not None and _is_valid_setting(key, value):
            result[key] = value.strip() if isinstance(value, str) else value
    for key, variable in _ENVIRONMENT_OVERRIDES.items():
        override = os.environ.get(variable)
        if override:
            result[key] = override
    return result


def save_setting(key: str, value: Any) -> None:
    if key not in DEFAULT_PREFERENCES:
        raise KeyError(key)
    data = _load_preferences()
    data[key] = value
    _save_preferences(data)


def _language_display(code: Optional[str]) -> str:
    if not code:
        return LANGUAGE_NAMES["auto"]
    return LANGUAGE_NAMES.get(code, code)


def compute_result_window_position(
    cursor: Tuple[int, int],
    screen: Tuple[int, int],
    window: Tuple[int, int] = RESULT_WINDOW_SIZE,
    *,
    offset: int = 10,
    margin: int = 10,
) -> Tuple[int, int]:
    """Place the result window next to the cursor but inside the screen."""

    width, height = window
    screen_width, screen_height = screen
    x = cursor[0] + offset
    y = cursor[1] + offset
    if x + width > screen_width:
        x = screen_width - width - margin
    if y + height > screen_height:
        y = screen_height - height - margin
    return max(x, 0), max(y, 0)


@dataclass
class TranslationRequest:
    text: str
    src: Optional[str]
    dest: str


@dataclass(frozen=True)
class UiMessage:
    """Message from the controller to the Tk thread.

    ``kind`` is one of ``show_float``, ``tooltip`` (payload: str),
    ``loading``, ``loading_done``, ``result`` (payload:
    :class:`TranslationResult`) and ``languages`` (payload: list of
    ``{"code", "name", "nativeName"}`` dicts for the pickers).
    """

    kind: str
    payload: Any = None


@dataclass
class AppState:
    """Mutable application state owned by :class:`TranslateSutraApp`."""

    preferences: dict
    source_language: str
    target_language: str
    last_original_text: Optional[str] = None
    last_trigger_time: float = 0.0
    quitting: bool = False

    @classmethod
    def from_preferences(cls, preferences: dict) -> "AppState":
        return cls(
            preferences=preferences,
            source_language=preferences["source_language"],
            target_language=preferences["target_language"],
        )


class TranslatorProtocol(Protocol):  # pragma: no cover - protocol is for type checking only
    def translate(self, text: str, src: Optional[str], dest: str) -> TranslationResult:
        """Translate text and return a result object."""

    def languages(self) -> List[Dict[str, str]]:
        """Return the languages the service can translate between."""


class UiProtocol(Protocol):  # pragma: no cover - protocol is for type checking only
    def post(self, message: UiMessage) -> None:
        ...

    def stop(self) -> None:
        ...


class SingleInstanceError(RuntimeError):
    """Raised when another instance of the application is already running."""


def _set_file_lock(handle: IO[str], locked: bool) -> None:
    if sys.platform == "win32":  # pragma: no cover - platform specific
        import msvcrt  # type: ignore

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK if locked else msvcrt.LK_UNLCK, 1)
    else:  # pragma: no cover - platform specific
        import fcntl  # type: ignore

        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB if locked else fcntl.LOCK_UN)


class SingleInstanceGuard:
    """Keep ``<tempdir>/<name>.lock`` locked for as long as the app runs.

    :meth:`acquire` raises :class:`SingleInstanceError` when a guard with the
    same name is already held, by this process or by another one.
    """

    def __init__(self, name: str) -> None:
        self.path = Path(tempfile.gettempdir()) / f"{name}.lock"
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self.held:
            return
        handle = open(self.path, "a+")
        try:
            _set_file_lock(handle, True)
        except OSError as exc:
            handle.close()
            raise SingleInstanceError("Another instance is already running") from exc
        self._handle = handle

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        with contextlib.suppress(OSError):
            _set_file_lock(handle, False)
        handle.close()
        with contextlib.suppress(OSError):
            self.path.unlink()

    def __enter__(self) -> "SingleInstanceGuard":
        self.acquire()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()


class AutoCloseTimer:
    """Call ``on_expire`` once ``seconds`` pass without :meth:`restart`.

    ``widget`` only needs Tk's ``after`` and ``after_cancel``.
    """

    def __init__(self, widget, seconds: float, on_expire: Callable[[], None]) -> None:
        self._widget = widget
        self._delay_ms = max(int(seconds * 1000), 1)
        self._on_expire = on_expire
        self._job: Optional[str] = None
        self.paused = False

    @property
    def pending(self) -> bool:
        return self._job is not None

    def restart(self) -> None:
        self.cancel()
        if not self.paused:
            self._job = self._widget.after(self._delay_ms, self._expire)

    def pause(self) -> None:
        self.paused = True
        self.cancel()

    def resume(self) -> None:
        self.paused = False
        self.restart()

    def cancel(self) -> None:
        job, self._job = self._job, None
        if job is not None:
            self._widget.after_cancel(job)

    def _expire(self) -> None:
        self._job = None
        self._on_expire()


class WindowManager:
    """Own the Tk thread with the floating button and the result window."""

    def __init__(
        self,
        state: AppState,
        *,
        on_translate_click: Callable[[], None],
        on_position_changed: Callable[[int, int], None],
        on_target_language: Callable[[str], None],
        on_source_language: Callable[[str], None],
        clipboard_module=pyperclip,
    ) -> None:
        self._state = state
        self._on_translate_click = on_translate_click
        self._on_position_changed = on_position_changed
        self._on_target_language = on_target_language
        self._on_source_language = on_source_language
        self._clipboard = clipboard_module
        self._queue: "queue.Queue[UiMessage]" = queue.Queue()
        self._ready = threading.Event()
        self._start_lock = threading.Lock()
        self._startup_error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._root: Optional[tk.Tk] = None
        self._fonts: Dict[str, tkfont.Font] = {}
        self._languages: List[Dict[str, str]] = list(PICKER_LANGUAGES)
        self._float_window: Optional[tk.Toplevel] = None
        self._float_label: Optional[tk.Label] = None
        self._tooltip: Optional[tk.Label] = None
        self._tooltip_job: Optional[str] = None
        self._result_window: Optional[tk.Toplevel] = None
        self._picker: Optional[tk.Toplevel] = None
        self._auto_close: Optional[AutoCloseTimer] = None
        self._pinned = False

    def post(self, message: UiMessage) -> None:
        with self._start_lock:
            if self._startup_error is None and (self._thread is None or not self._thread.is_alive()):
                self._ready.clear()
                self._thread = threading.Thread(target=self._run, name="TkWindows", daemon=True)
                self._thread.start()
                self._ready.wait()
        if self._startup_error is not None:
            logger.warning("Windows are unavailable; dropping %s message", message.kind)
            return
        self._queue.put(message)

    def stop(self) -> None:
        root = self._root
        if root is not None:
            root.after(0, root.quit)

    def _run(self) -> None:
        try:
            root = self._create_root()
        except tk.TclError as exc:
            self._startup_error = exc
            logger.error("Cannot open the translation windows: %s", exc)
            return
        finally:
            self._ready.set()

        def apply_update() -> None:
            try:
                while True:
                    self._handle_message(self._queue.get_nowait())
            except queue.Empty:
                pass
            root.after(100, apply_update)

        apply_update()
        root.mainloop()
        root.destroy()
        self._root = None
        self._float_window = None
        self._result_window = None
        self._picker = None
        self._auto_close = None

    def _create_root(self) -> tk.Tk:
        root = tk.Tk()
        try:
            root.withdraw()
            self._fonts = {
                "float": tkfont.Font(size=20, weight="bold"),
                "small": tkfont.Font(size=9),
                "label": tkfont.Font(size=10, weight="bold"),
                "text": tkfont.Font(size=11),
            }
            self._build_float_window(root)
        except tk.TclError:
            root.destroy()
            raise
        self._root = root
        return root

    def _handle_message(self, message: UiMessage) -> None:
        if message.kind == "show_float":
            self._show_float()
        elif message.kind == "tooltip":
            self._show_tooltip(str(message.payload))
        elif message.kind == "loading":
            self._set_loading(True)
        elif message.kind == "loading_done":
            self._set_loading(False)
        elif message.kind == "result":
            self._show_result(message.payload)
        elif message.kind == "languages":
            self._languages = list(message.payload)

    def _build_float_window(self, root: tk.Tk) -> None:
        position = self._state.preferences["window_position"]
        window = tk.Toplevel(root)
        window.overrideredirect(True)
        window.attributes("-topmost", True)
        window.geometry(f"{FLOAT_WINDOW_SIZE}x{FLOAT_WINDOW_SIZE}+{position['x']}+{position['y']}")
        window.withdraw()

        label = tk.Label(
            window,
            text="文A",
            font=self._fonts["float"],
            bg="#1a73e8",
            fg="white",
            cursor="hand2",
        )
        label.pack(fill=tk.BOTH, expand=True)
        tooltip = tk.Label(
            window,
            font=self._fonts["small"],
            bg="#202124",
            fg="white",
            wraplength=FLOAT_WINDOW_SIZE - 8,
        )

        drag = {"x": 0, "y": 0, "left": 0, "top": 0, "moved": False}

        def on_press(event: tk.Event) -> None:
            drag.update(
                x=event.x_root, y=event.y_root, left=window.winfo_x(), top=window.winfo_y(), moved=False
            )

        def on_motion(event: tk.Event) -> None:
            dx = event.x_root - drag["x"]
            dy = event.y_root - drag["y"]
            if abs(dx) + abs(dy) > DRAG_THRESHOLD:
                drag["moved"] = True
            if drag["moved"]:
                window.geometry(f"+{drag['left'] + dx}+{drag['top'] + dy}")

        def on_release(_event: tk.Event) -> None:
            if drag["moved"]:
                self._on_position_changed(window.winfo_x(), window.winfo_y())
            else:
                self._on_translate_click()

        label.bind("<ButtonPress-1>", on_press)
        label.bind("<B1-Motion>", on_motion)
        label.bind("<ButtonRelease-1>", on_release)

        self._float_window = window
        self._float_label = label
        self._tooltip = tooltip

    def _show_float(self) -> None:
        if self._float_window is not None:
            self._float_window.deiconify()
            self._float_window.lift()

    def _show_tooltip(self, text: str) -> None:
        if self._float_window is None or self._tooltip is None:
            return
        self._show_float()
        self._tooltip.configure(text=text)
        self._tooltip.pack(side=tk.BOTTOM, fill=tk.X)
        if self._tooltip_job is not None:
            self._float_window.after_cancel(self._tooltip_job)
        self._tooltip_job = self._float_window.after(2500, self._hide_tooltip)

    def _hide_tooltip(self) -> None:
        self._tooltip_job = None
        if self._tooltip is not None:
            self._tooltip.pack_forget()

    def _set_loading(self, loading: bool) -> None:
        if self._float_label is not None:
            self._float_label.configure(text="…" if loading else "文A")

    def _display_name(self, code: Optional[str]) -> str:
        for entry in self._languages:
            if entry["code"] == code:
                return entry["name"]
        return _language_display(code)

    def _show_result(self, result: TranslationResult) -> None:
        assert self._root is not None  # noqa: S101 - only called from the Tk thread
        root = self._root
        self._close_result()

        window = tk.Toplevel(root)
        window.overrideredirect(True)
        window.attributes("-topmost", True)
        width, height = RESULT_WINDOW_SIZE
        x, y = compute_result_window_position(
            (root.winfo_pointerx(), root.winfo_pointery()),
            (root.winfo_screenwidth(), root.winfo_screenheight()),
        )
        window.geometry(f"{width}x{height}+{x}+{y}")

        header = tk.Frame(window, bg="#f8f9fa")
        header.pack(fill=tk.X, padx=8, pady=(8, 4))
        source_button = tk.Button(
            header, text=self._display_name(result.from_language), font=self._fonts["label"], relief=tk.FLAT
        )
        source_button.configure(
            command=lambda: self._open_language_picker(source_button, self._on_source_language, include_auto=True)
        )
        source_button.pack(side=tk.LEFT)
        tk.Label(header, text="→", font=self._fonts["label"], bg="#f8f9fa").pack(side=tk.LEFT)
        target_button = tk.Button(
            header, text=self._display_name(result.to_language), font=self._fonts["label"], relief=tk.FLAT
        )
        target_button.configure(command=lambda: self._open_language_picker(target_button, self._on_target_language))
        target_button.pack(side=tk.LEFT)

        tk.Button(header, text="×", relief=tk.FLAT, command=self._close_result).pack(side=tk.RIGHT)
        pin_button = tk.Button(header, text="Pin", relief=tk.FLAT)
        pin_button.configure(command=lambda: self._toggle_pin(pin_button))
        pin_button.pack(side=tk.RIGHT)
        copy_button = tk.Button(header, text="Copy", relief=tk.FLAT)
        copy_button.configure(command=lambda: self._copy_translation(result.translated_text, copy_button))
        copy_button.pack(side=tk.RIGHT)

        for text, height_lines in ((result.original_text, 4), (result.translated_text, 8)):
            box = scrolledtext.ScrolledText(window, wrap=tk.WORD, height=height_lines)
            box.insert(tk.END, text)
            box.configure(state=tk.DISABLED, font=self._fonts["text"])
            box.pack(fill=tk.BOTH, expand=True, padx=8, pady=(0, 8))

        tk.Label(window, text=result.service, font=self._fonts["small"], fg="#5f6368").pack(anchor="e", padx=8)

        def handle_escape(_event: tk.Event) -> str:
            self._close_result()
            return "break"

        window.bind("<Escape>", handle_escape)
        # Child widgets carry the toplevel in their bindtags, so this sees
        # activity anywhere inside the window.
        window.bind("<Motion>", self._note_activity, add="+")
        window.bind("<Key>", self._note_activity, add="+")
        window.focus_force()

        self._result_window = window
        self._pinned = False
        self._auto_close = AutoCloseTimer(
            window, self._state.preferences["result_auto_close_seconds"], self._close_result
        )
        self._auto_close.restart()

    def _note_activity(self, _event: Optional[tk.Event] = None) -> None:
        if self._auto_close is not None:
            self._auto_close.restart()

    def _toggle_pin(self, button: tk.Button) -> None:
        self._pinned = not self._pinned
        button.configure(relief=tk.SUNKEN if self._pinned else tk.FLAT)
        if self._auto_close is None:
            return
        if self._pinned:
            self._auto_close.pause()
        else:
            self._auto_close.resume()

    def _copy_translation(self, text: str, button: tk.Button) -> None:
        try:
            self._clipboard.copy(text)
        except Exception as exc:
            logger.error("Failed to copy translation: %s", exc)
            return
        button.configure(text="Copied!", state=tk.DISABLED)
        if self._root is not None:
            self._root.after(COPY_FEEDBACK_MS, lambda: self._reset_copy_button(button))

    @staticmethod
    def _reset_copy_button(button: tk.Button) -> None:
        with contextlib.suppress(tk.TclError):  # the result window may be gone by now
            button.configure(text="Copy", state=tk.NORMAL)

    def _open_language_picker(
        self, anchor: tk.Button, on_select: Callable[[str], None], *, include_auto: bool = False
    ) -> None:
        self._close_picker()
        languages = list(self._languages)
        if include_auto:
            languages.insert(0, {"code": "auto", "name": LANGUAGE_NAMES["auto"]})

        picker = tk.Toplevel(anchor)
        picker.overrideredirect(True)
        picker.attributes("-topmost", True)
        picker.geometry(f"220x240+{anchor.winfo_rootx()}+{anchor.winfo_rooty() + anchor.winfo_height()}")
        search = tk.StringVar()
        entry = tk.Entry(picker, textvariable=search)
        entry.pack(fill=tk.X, padx=4, pady=4)
        listbox = tk.Listbox(picker, exportselection=False, activestyle="none")
        listbox.pack(fill=tk.BOTH, expand=True, padx=4, pady=(0, 4))
        shown: List[Dict[str, str]] = []

        def refresh(*_args: object) -> None:
            shown[:] = filter_languages(languages, search.get())
            listbox.delete(0, tk.END)
            for item in shown:
                listbox.insert(tk.END, _picker_label(item))
            if shown:
                listbox.selection_set(0)

        def choose(_event: Optional[tk.Event] = None) -> str:
            selection = listbox.curselection()
            if selection:
                code = shown[selection[0]]["code"]
                self._close_picker()
                anchor.configure(text=self._display_name(code))
                on_select(code)
            return "break"

        search.trace_add("write", refresh)
        listbox.bind("<Double-Button-1>", choose)
        listbox.bind("<Return>", choose)
        entry.bind("<Return>", choose)
        picker.bind("<Escape>", lambda _event: self._close_picker())
        picker.bind("<Motion>", self._note_activity, add="+")
        picker.bind("<Key>", self._note_activity, add="+")
        refresh()
        picker.focus_force()
        entry.focus_set()
        self._picker = picker

    def _close_picker(self) -> None:
        picker, self._picker = self._picker, None
        if picker is not None:
            with contextlib.suppress(tk.TclError):
                picker.destroy()

    def _close_result(self) -> None:
        window, timer = self._result_window, self._auto_close
        self._result_window = None
        self._auto_close = None
        self._close_picker()
        if timer is not None:
            timer.cancel()
        if window is not None:
            window.destroy()


class SystemTrayController:
    """Tray icon with Show Floating Button, Settings, About and Quit commands."""

    def __init__(self, app: "TranslateSutraApp") -> None:
        self._app = app
        self._icon: Optional["pystray.Icon"] = None

    @staticmethod
    def _is_supported() -> bool:
        return pystray is not None and MenuItem is not None and Image is not None and ImageDraw is not None

    def start(self) -> None:
        if not self._is_supported():
            print("System tray icon is unavailable because required dependencies are missing.")
            return

        assert pystray is not None  # noqa: S101 - guarded by _is_supported
        menu = pystray.Menu(
            MenuItem("Show Floating Button", self._on_show_float, default=True),
            pystray.Menu.SEPARATOR,
            MenuItem("Settings", self._on_settings),
            MenuItem("About", self._on_about),
            pystray.Menu.SEPARATOR,
            MenuItem("Quit", self._on_quit),
        )
        self._icon = pystray.Icon("translatesutra", self._create_icon_image(), "TranslateSutra", menu=menu)
        self._icon.run_detached()

    def stop(self) -> None:
        if self._icon is not None:
            self._icon.stop()
            self._icon = None

    def _on_show_float(self, _icon: "pystray.Icon", _: MenuItem) -> None:
        self._app.show_float_window()

    def _on_settings(self, _icon: "pystray.Icon", _: MenuItem) -> None:
        webbrowser.open(SETTINGS_URL)

    def _on_about(self, _icon: "pystray.Icon", _: MenuItem) -> None:
        webbrowser.open(ABOUT_URL)

    def _on_quit(self, icon: "pystray.Icon", _: MenuItem) -> None:
        self._app.stop()
        icon.stop()

    def _create_icon_image(self) -> "Image.Image":
        assert Image is not None and ImageDraw is not None  # noqa: S101 - guarded by _is_supported
        size = 64
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        draw.rounded_rectangle((6, 6, size - 6, size - 6), radius=12, fill=(26, 115, 232, 255))
        draw.rectangle((18, 18, size - 18, 24), fill=(255, 255, 255, 255))
        draw.rectangle((size // 2 - 3, 18, size // 2 + 3, size - 16), fill=(255, 255, 255, 255))
        return image


class TranslateSutraApp:
    """Listens for the translate hotkey and shows the translated selection."""

    def __init__(
        self,
        state: AppState,
        *,
        translator_factory: Optional[Callable[[], TranslatorProtocol]] = None,
        capture_coordinator: Optional[ClipboardCaptureCoordinator] = None,
        clipboard_module=pyperclip,
        time_provider: Callable[[], float] = time.perf_counter,
        ui: Optional[UiProtocol] = None,
        hotkey_service_factory: Optional[
            Callable[[Sequence[HotkeyBinding], "queue.Queue[Optional[HotkeyEvent]]", logging.Logger], BaseHotkeyService]
        ] = None,
        hotkey_bindings: Optional[Sequence[HotkeyBinding]] = None,
        min_trigger_interval: float = MIN_TRIGGER_INTERVAL,
    ) -> None:
        self.state = state
        preferences = state.preferences
        self._translator: Optional[TranslatorProtocol] = None
        self._translator_factory = translator_factory or self._default_translator_factory
        self._translator_lock = threading.Lock()
        self._time_provider = time_provider
        self._min_trigger_interval = min_trigger_interval
        self._lock = threading.Lock()
        self._logger = _get_logger()

        if capture_coordinator is None:
            capture_coordinator = ClipboardCaptureCoordinator(
                clipboard_module,
                timeout_ms=preferences["capture_timeout_ms"],
                poll_interval=preferences["poll_interval_ms"] / 1000.0,
                min_text_length=preferences["min_text_length"],
            )
        self._coordinator = capture_coordinator

        self._request_queue: "queue.Queue[Optional[TranslationRequest]]" = queue.Queue()
        self._hotkey_event_queue: "queue.Queue[Optional[HotkeyEvent]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._worker_thread: Optional[threading.Thread] = None
        self._hotkey_dispatcher: Optional[threading.Thread] = None
        self._tray_controller: Optional[SystemTrayController] = None

        self._ui: UiProtocol = ui if ui is not None else WindowManager(
            state,
            on_translate_click=self.request_translation,
            on_position_changed=self._save_window_position,
            on_target_language=self.set_target_language,
            on_source_language=self.set_source_language,
            clipboard_module=clipboard_module,
        )

        self._hotkey_service_factory = hotkey_service_factory
        self._hotkey_service: Optional[BaseHotkeyService] = None
        if hotkey_bindings is not None:
            self._hotkey_bindings = list(hotkey_bindings)
        else:
            try:
                self._hotkey_bindings = build_bindings_from_preferences(preferences)
            except ValueError as exc:
                self._logger.error("Failed to build hotkey bindings: %s", exc)
                self._hotkey_bindings = []

    @property
    def translator(self) -> TranslatorProtocol:
        with self._translator_lock:
            if self._translator is None:
                self._translator = self._translator_factory()
            translator = self._translator
        assert translator is not None  # For type checkers
        return translator

    def _default_translator_factory(self) -> TranslatorProtocol:
        preferences = self.state.preferences
        return TranslationService(
            BackendClient(preferences["backend_url"], KeyringTokenStore()),
            LibreTranslateClient(preferences["libretranslate_url"]),
        )

    def start(self, *, tray_controller: Optional[SystemTrayController] = None) -> None:
        """Start listening for hotkeys and processing translations."""

        self._tray_controller = tray_controller
        self._ensure_background_threads()
        threading.Thread(target=self._refresh_languages, name="LanguageLoader", daemon=True).start()
        self._hotkey_service = self._create_hotkey_service()
        if self._hotkey_service is not None:
            try:
                self._hotkey_service.start()
                self._logger.info("Hotkey service started with %s", self._hotkey_service.describe_bindings())
            except Exception as exc:
                self._logger.exception("Failed to start hotkey service: %s", exc)
                self._hotkey_service.stop()
                self._hotkey_service = None

        print(
            f"TranslateSutra is running. Press {self.state.preferences['hotkey']} on selected text to translate."
        )
        if self._tray_controller is not None:
            self._tray_controller.start()
        self.show_float_window()

        try:
            self._stop_event.wait()
        except KeyboardInterrupt:  # pragma: no cover - manual console interruption
            self.stop()
        finally:
            self._shutdown()

    def stop(self) -> None:
        """Signal the application to shut down."""

        self.state.quitting = True
        self._stop_event.set()
        self._coordinator.shutdown()
        if self._hotkey_dispatcher is not None and self._hotkey_dispatcher.is_alive():
            self._hotkey_event_queue.put(None)
        if self._worker_thread is not None and self._worker_thread.is_alive():
            self._request_queue.put(None)

    def _shutdown(self) -> None:
        if self._tray_controller is not None:
            self._tray_controller.stop()
        if self._hotkey_service is not None:
            self._hotkey_service.stop()
            self._logger.info("Hotkey service stopped")
            self._hotkey_service = None
        self._ui.stop()

    def request_translation(self) -> None:
        """Queue a capture as if the translate hotkey had been pressed."""

        self._hotkey_event_queue.put(HotkeyEvent("translate", self._time_provider()))

    def show_float_window(self) -> None:
        self._ui.post(UiMessage("show_float"))

    def _refresh_languages(self) -> None:
        """Replace the pickers' built-in language list with the server's."""

        languages = [
            dict(entry, nativeName=entry.get("nativeName") or _NATIVE_NAMES.get(entry["code"], entry["name"]))
            for entry in self.translator.languages()
            if entry["code"] != "auto"
        ]
        if languages and not self.state.quitting:
            self._ui.post(UiMessage("languages", languages))

    def _create_hotkey_service(self) -> Optional[BaseHotkeyService]:
        if not self._hotkey_bindings:
            self._logger.warning("No hotkey bindings available; global hotkeys are disabled")
            return None
        factory = self._hotkey_service_factory or KeyboardHotkeyService
        try:
            return factory(self._hotkey_bindings, self._hotkey_event_queue, self._logger)
        except Exception as exc:
            self._logger.exception("Failed to create hotkey service: %s", exc)
            return None

    def _ensure_background_threads(self) -> None:
        if self._worker_thread is None or not self._worker_thread.is_alive():
            self._worker_thread = threading.Thread(
                target=self._process_requests, name="TranslationWorker", daemon=True
            )
            self._worker_thread.start()
        if self._hotkey_dispatcher is None or not self._hotkey_dispatcher.is_alive():
            self._hotkey_dispatcher = threading.Thread(
                target=self._dispatch_hotkey_events,
                name="HotkeyDispatcher",
                daemon=True,
            )
            self._hotkey_dispatcher.start()

    def _dispatch_hotkey_events(self) -> None:
        while True:
            event = self._hotkey_event_queue.get()
            if event is None:
                break
            try:
                self._process_hotkey_event(event)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                self._logger.exception("Error while processing hotkey event: %s", exc)

    def _process_hotkey_event(self, event: HotkeyEvent) -> Optional["Future[CaptureResult]"]:
        if event.name == "translate":
            return self._handle_translate_event(timestamp=event.timestamp)
        if event.name == "show_float":
            self.show_float_window()
        else:
            self._logger.debug("Unknown hotkey event: %s", event.name)
        return None

    def _handle_translate_event(self, *, timestamp: float) -> Optional["Future[CaptureResult]"]:
        with self._lock:
            if self.state.quitting:
                return None
            if timestamp - self.state.last_trigger_time < self._min_trigger_interval:
                return None
            self.state.last_trigger_time = timestamp

        future = self._coordinator.submit()
        future.add_done_callback(self._on_capture_done)
        return future

    def _on_capture_done(self, future: "Future[CaptureResult]") -> None:
        self._handle_capture_result(future.result())

    def _handle_capture_result(self, result: CaptureResult) -> None:
        if isinstance(result, CapturedText):
            with self._lock:
                request = TranslationRequest(
                    text=result.text, src=self.state.source_language, dest=self.state.target_language
                )
            self._request_queue.put(request)
            return
        assert isinstance(result, Empty)  # noqa: S101 - CaptureResult has two cases
        if result.reason in (Degradation.BUSY, Degradation.CANCELLED):
            return
        self._ui.post(UiMessage("tooltip", SELECT_TEXT_HINT))

    def set_target_language(self, language: str) -> None:
        with self._lock:
            self.state.target_language = language
            save_setting("target_language", language)
            request = self._retranslation_request()
        if request is not None:
            self._request_queue.put(request)

    def set_source_language(self, language: str) -> None:
        with self._lock:
            self.state.source_language = language
            save_setting("source_language", language)
            request = self._retranslation_request()
        if request is not None:
            self._request_queue.put(request)

    def _retranslation_request(self) -> Optional[TranslationRequest]:
        text = self.state.last_original_text
        if not text:
            return None
        return TranslationRequest(text=text, src=self.state.source_language, dest=self.state.target_language)

    def _save_window_position(self, x: int, y: int) -> None:
        position = {"x": x, "y": y}
        self.state.preferences["window_position"] = position
        save_setting("window_position", position)

    def _process_requests(self) -> None:
        while True:
            request = self._request_queue.get()
            try:
                if request is None:
                    break
                self._process_single_request(request)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                self._logger.exception("Error while processing translation request: %s", exc)
            finally:
                self._request_queue.task_done()

    def _process_single_request(self, request: TranslationRequest) -> None:
        with self._lock:
            self.state.last_original_text = request.text
        self._ui.post(UiMessage("loading"))
        try:
            translation = self.translator.translate(request.text, src=request.src, dest=request.dest)
        except TranslationError as exc:
            self._logger.error("Translation error: %s", exc)
            self._ui.post(UiMessage("loading_done"))
            self._ui.post(UiMessage("tooltip", TRANSLATION_FAILED_HINT))
            return
        self._ui.post(UiMessage("loading_done"))
        self._ui.post(UiMessage("result", translation))


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Translate the selected text with a global hotkey.")
    parser.add_argument("--target", default=None, help="Target language (default: last saved or en).")
    parser.add_argument("--source", default=None, help="Source language. Use 'auto' to auto-detect.")
    parser.add_argument("--hotkey", default=None, help="Translate hotkey, e.g. Ctrl+Shift+T.")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG-level logging.")
    parser.add_argument("--display-name", default=None, help="Display name for --register.")
    account = parser.add_mutually_exclusive_group()
    account.add_argument("--login", metavar="EMAIL", help="Sign in to the backend and exit.")
    account.add_argument("--register", metavar="EMAIL", help="Create a backend account, sign in and exit.")
    account.add_argument("--logout", action="store_true", help="Sign out of the backend and exit.")
    account.add_argument("--whoami", action="store_true", help="Show the signed-in backend account and exit.")
    return parser.parse_args(argv)


def _wants_account_action(args: argparse.Namespace) -> bool:
    return bool(args.login or args.register or args.logout or args.whoami)


def _run_account_action(args: argparse.Namespace, preferences: dict) -> int:
    client = BackendClient(preferences["backend_url"], KeyringTokenStore())
    if args.logout:
        client.logout()
        print("Signed out.")
        return 0
    if args.whoami:
        try:
            profile = client.current_user()
        except TranslationError as exc:
            print(f"Not signed in: {exc}", file=sys.stderr)
            return 1
        profile = profile if isinstance(profile, dict) else {}
        print(f"Signed in as {profile.get('displayName') or '-'} <{profile.get('email') or '-'}>.")
        return 0

    email = args.register or args.login
    password = getpass.getpass("Password: ")
    try:
        if args.register:
            display_name = args.display_name or input("Display name: ").strip()
            client.register(email, password, display_name)
        else:
            client.login(email, password)
    except AuthError as exc:
        action = "Registration" if args.register else "Login"
        print(f"{action} failed: {exc}", file=sys.stderr)
        return 1
    print(f"Signed in as {email}.")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    _get_logger(args.verbose)
    preferences = load_settings()
    if _wants_account_action(args):
        return _run_account_action(args, preferences)

    for key, value in (("target_language", args.target), ("source_language", args.source), ("hotkey", args.hotkey)):
        if value:
            preferences[key] = value
            save_setting(key, value)

    try:
        with SingleInstanceGuard("translatesutra"):
            app = TranslateSutraApp(AppState.from_preferences(preferences))
            app.start(tray_controller=SystemTrayController(app))
    except SingleInstanceError:
        root = tk.Tk()
        root.withdraw()
        messagebox.showinfo("TranslateSutra", "TranslateSutra is already running.")
        root.destroy()
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
