"""Global hotkey management based on the ``keyboard`` package."""

from __future__ import annotations

import logging
import queue
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

try:  # pragma: no cover - optional dependency on some platforms
    import keyboard  # type: ignore
except ImportError:  # pragma: no cover - handled in KeyboardHotkeyService
    keyboard = None  # type: ignore


@dataclass(frozen=True)
class HotkeyBinding:
    """Represents a single hotkey registration."""

    name: str
    combo: str
    display: str


@dataclass(frozen=True)
class HotkeyEvent:
    """Event generated when a registered hotkey is triggered."""

    name: str
    timestamp: float


class BaseHotkeyService:
    """Protocol-like base class for hotkey backends."""

    def start(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def describe_bindings(self) -> Sequence[str]:  # pragma: no cover - interface definition
        raise NotImplementedError


class KeyboardHotkeyService(BaseHotkeyService):
    """Registers global hotkeys and forwards them as :class:`HotkeyEvent`."""

    def __init__(
        self,
        bindings: Sequence[HotkeyBinding],
        event_queue: "queue.Queue[HotkeyEvent]",
        logger: logging.Logger,
        *,
        keyboard_module=keyboard,
        time_provider: Callable[[], float] = time.perf_counter,
    ) -> None:
        if keyboard_module is None:
            raise RuntimeError(
                "The 'keyboard' package is required. Install it with 'pip install keyboard'."
            )
        self._bindings: List[HotkeyBinding] = list(bindings)
        self._event_queue = event_queue
        self._logger = logger
        self._keyboard = keyboard_module
        self._time_provider = time_provider
        self._handles: Dict[str, object] = {}

    def start(self) -> None:
        if self._handles:
            return
        for binding in self._bindings:
            try:
                # Fire once the combination is let go so the keys are not
                # still down when the synthetic copy is sent.
                handle = self._keyboard.add_hotkey(
                    binding.combo,
                    self._make_callback(binding),
                    suppress=False,
                    trigger_on_release=True,
                )
            except Exception as exc:
                self._logger.error(
                    "Failed to register hotkey %s (%s): %s", binding.name, binding.display, exc
                )
                continue
            self._handles[binding.name] = handle
            self._logger.info("Registered hotkey '%s' as %s", binding.name, binding.display)
        if not self._handles and self._bindings:
            raise RuntimeError("No hotkey could be registered")

    def stop(self) -> None:
        for name, handle in list(self._handles.items()):
            try:
                self._keyboard.remove_hotkey(handle)
            except (KeyError, ValueError) as exc:
                self._logger.debug("Hotkey %s already removed: %s", name, exc)
        self._handles.clear()

    def describe_bindings(self) -> Sequence[str]:
        return [f"{binding.name}: {binding.display}" for binding in self._bindings]

    @property
    def active(self) -> bool:
        return bool(self._handles)

    def _make_callback(self, binding: HotkeyBinding) -> Callable[[], None]:
        def callback() -> None:
            self._on_hotkey(binding)

        return callback

    def _on_hotkey(self, binding: HotkeyBinding) -> None:
        timestamp = self._time_provider()
        try:
            self._event_queue.put_nowait(HotkeyEvent(binding.name, timestamp))
        except queue.Full:
            self._logger.warning("Dropping hotkey event for %s (queue full)", binding.name)


_MODIFIER_ALIASES = {
    "commandorcontrol": "ctrl",
    "cmdorctrl": "ctrl",
    "control": "ctrl",
    "ctrl": "ctrl",
    "alt": "alt",
    "option": "alt",
    "shift": "shift",
    "super": "windows",
    "win": "windows",
    "windows": "windows",
    "meta": "windows",
    "command": "command",
    "cmd": "command",
}

_KEY_ALIASES = {
    "esc": "esc",
    "escape": "esc",
    "return": "enter",
    "enter": "enter",
    "space": "space",
    "pageup": "page up",
    "pagedown": "page down",
    "delete": "delete",
    "backspace": "backspace",
    "tab": "tab",
}


def normalize_combo(combo: str) -> str:
    """Convert a textual combination into the ``keyboard`` package syntax.

    Accepts both ``Ctrl+Shift+T`` and accelerator style strings such as
    ``CommandOrControl+Shift+T``.
    """

    parts = [part.strip().lower() for part in combo.replace("-", "+").split("+") if part.strip()]
    if not parts:
        raise ValueError(f"Invalid hotkey definition: {combo!r}")

    modifiers: List[str] = []
    key: Optional[str] = None
    for token in parts:
        if token in _MODIFIER_ALIASES:
            modifier = _MODIFIER_ALIASES[token]
            if modifier not in modifiers:
                modifiers.append(modifier)
            continue
        if key is not None:
            raise ValueError(f"Hotkey combination has more than one key: {combo!r}")
        if len(token) == 1 or (token.startswith("f") and token[1:].isdigit()):
            key = token
        elif token in _KEY_ALIASES:
            key = _KEY_ALIASES[token]
        else:
            raise ValueError(f"Unknown key token: {token!r}")

    if key is None:
        raise ValueError(f"Hotkey combination is missing a non-modifier key: {combo!r}")
    return "+".join(modifiers + [key])


def build_hotkey_binding(name: str, combo: str) -> HotkeyBinding:
    """Create a :class:`HotkeyBinding` from a textual representation."""

    normalized = normalize_combo(combo)
    display = "+".join(part.capitalize() if len(part) > 1 else part.upper() for part in normalized.split("+"))
    return HotkeyBinding(name=name, combo=normalized, display=display)


def build_bindings_from_preferences(preferences: Dict[str, object]) -> List[HotkeyBinding]:
    bindings = []
    translate_combo = preferences.get("hotkey")
    if isinstance(translate_combo, str) and translate_combo.strip():
        bindings.append(build_hotkey_binding("translate", translate_combo))
    float_combo = preferences.get("float_hotkey")
    if isinstance(float_combo, str) and float_combo.strip():
        bindings.append(build_hotkey_binding("show_float", float_combo))
    return bindings
