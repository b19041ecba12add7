"""Trigger detection: raw key events in, capture/correction signals out.

``TriggerEngine`` is the pure classifier and can be fed synthetic events.
``GlobalHotkeyAdapter`` turns pynput's global listener callbacks into
``ModifierEvent``/``KeyEvent`` objects for it.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from interfaces import PermissionProvider
from models import (
    DEVICE_INDEPENDENT,
    HotkeyBindings,
    KeyEvent,
    Modifier,
    ModifierEvent,
    TriggerSignal,
)

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = logging.getLogger(__name__)

SignalCallback = Callable[[TriggerSignal], None]

MODIFIER_KEYS: dict[str, Modifier] = {
    "shift": Modifier.SHIFT,
    "shift_l": Modifier.SHIFT,
    "shift_r": Modifier.SHIFT,
    "ctrl": Modifier.CONTROL,
    "ctrl_l": Modifier.CONTROL,
    "ctrl_r": Modifier.CONTROL,
    "alt": Modifier.ALT,
    "alt_l": Modifier.ALT,
    "alt_r": Modifier.ALT,
    "alt_gr": Modifier.ALT,
    "cmd": Modifier.CMD,
    "cmd_l": Modifier.CMD,
    "cmd_r": Modifier.CMD,
    "caps_lock": Modifier.CAPS_LOCK,
}

_COMBO_ALIASES: dict[str, Modifier] = {
    "shift": Modifier.SHIFT,
    "ctrl": Modifier.CONTROL,
    "control": Modifier.CONTROL,
    "alt": Modifier.ALT,
    "option": Modifier.ALT,
    "cmd": Modifier.CMD,
    "command": Modifier.CMD,
    "super": Modifier.CMD,
    "win": Modifier.CMD,
    "fn": Modifier.FUNCTION,
}


def parse_combo(combo: str) -> tuple[str, Modifier]:
    """Parse ``"cmd+shift+c"`` into ``("c", Modifier.CMD | Modifier.SHIFT)``."""
    parts = [p.strip().lower() for p in combo.split("+") if p.strip()]
    if not parts:
        raise ValueError(f"empty hotkey: {combo!r}")
    *mods, key = parts
    mask = Modifier.NONE
    for name in mods:
        if name not in _COMBO_ALIASES:
            raise ValueError(f"unknown modifier {name!r} in {combo!r}")
        mask |= _COMBO_ALIASES[name]
    return key, mask


def format_combo(key: str, modifiers: Modifier) -> str:
    names = [name for name, bit in (("ctrl", Modifier.CONTROL), ("alt", Modifier.ALT),
                                    ("shift", Modifier.SHIFT), ("cmd", Modifier.CMD),
                                    ("fn", Modifier.FUNCTION)) if modifiers & bit]
    return "+".join(names + [key])


class TriggerEngine:
    """Classifies modifier/key events into trigger signals.

    A double press of the trigger modifier (two press edges within the
    configured window, the key pressed alone) starts capture and enters
    hold mode; releasing the modifier while in hold mode stops capture.
    Callbacks may arrive on any thread; ``emit`` must be thread safe.
    """

    def __init__(
        self,
        emit: SignalCallback,
        bindings: Optional[HotkeyBindings] = None,
        permission: Optional[PermissionProvider] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._emit = emit
        self._permission = permission
        self._clock = clock
        self._lock = threading.Lock()
        self._bindings = self.validated(bindings or HotkeyBindings())
        self._hold_active = False
        self._hold_key: Optional[str] = None
        self._trigger_down = False
        self._last_press_at: Optional[float] = None
        self._permission_requested = False

    @property
    def bindings(self) -> HotkeyBindings:
        return self._bindings

    @property
    def hold_active(self) -> bool:
        return self._hold_active

    def on_modifier_change(self, event: ModifierEvent) -> None:
        signal: Optional[TriggerSignal] = None
        with self._lock:
            bindings = self._bindings
            trigger_bit = MODIFIER_KEYS[bindings.trigger_key]
            mods = event.modifiers & DEVICE_INDEPENDENT

            if event.key == bindings.trigger_key and event.pressed:
                if self._trigger_down:
                    return
                self._trigger_down = True
                if mods != trigger_bit:
                    # Part of a chord, not a trigger press.
                    self._last_press_at = None
                    return
                now = event.timestamp if event.timestamp is not None else self._clock()
                previous = self._last_press_at
                if self._hold_active:
                    return
                if previous is not None and now - previous <= bindings.double_press_window_s:
                    self._hold_active = True
                    self._hold_key = bindings.trigger_key
                    self._last_press_at = None
                    signal = TriggerSignal.CAPTURE_START
                else:
                    self._last_press_at = now
            else:
                if event.key == bindings.trigger_key:
                    self._trigger_down = False
                # A hold ends on the key that started it, even after a rebind.
                hold_key = self._hold_key or bindings.trigger_key
                hold_released = (event.key == hold_key and not event.pressed) or not (
                    mods & MODIFIER_KEYS[hold_key]
                )
                if self._hold_active and hold_released:
                    self._hold_active = False
                    self._hold_key = None
                    self._trigger_down = False
                    signal = TriggerSignal.CAPTURE_STOP
        if signal is not None:
            logger.info(f"Trigger signal: {signal.value}")
            self._emit(signal)

    def on_key_down(self, event: KeyEvent) -> None:
        with self._lock:
            bindings = self._bindings
            mods = event.modifiers & DEVICE_INDEPENDENT
            matched = (
                event.key.lower() == bindings.correction_key
                and mods == (bindings.correction_modifiers & DEVICE_INDEPENDENT)
            )
        if matched:
            logger.info("Trigger signal: open_correction")
            self._emit(TriggerSignal.OPEN_CORRECTION)

    def reconfigure(self, bindings: HotkeyBindings) -> None:
        """Swap bindings; events in flight finish under the old ones."""
        validated = self.validated(bindings)
        with self._lock:
            self._bindings = validated
            self._last_press_at = None
            self._trigger_down = False
        logger.info(
            f"Hotkeys rebound: trigger={validated.trigger_key}, "
            f"correction={format_combo(validated.correction_key, validated.correction_modifiers)}"
        )

    def request_permission(self) -> bool:
        if self._permission is None:
            return True
        granted = self._permission.is_granted()
        if not granted and not self._permission_requested:
            self._permission_requested = True
            logger.info("Requesting input monitoring permission")
            try:
                granted = self._permission.request()
            except Exception as exc:
                logger.warning(f"Permission request failed: {exc}")
        return granted

    @staticmethod
    def validated(bindings: HotkeyBindings) -> HotkeyBindings:
        bit = MODIFIER_KEYS.get(bindings.trigger_key)
        if bit is None or not bit & DEVICE_INDEPENDENT:
            raise ValueError(f"trigger key must be a modifier, got {bindings.trigger_key!r}")
        if bindings.double_press_window_s <= 0:
            raise ValueError("double press window must be positive")
        return HotkeyBindings(
            trigger_key=bindings.trigger_key,
            double_press_window_s=bindings.double_press_window_s,
            correction_key=bindings.correction_key.lower(),
            correction_modifiers=bindings.correction_modifiers,
        )


def _key_name(key: object) -> str:
    name = getattr(key, "name", None)
    if name:
        return str(name)
    char = getattr(key, "char", None)
    if char and char.isprintable():
        return char.lower()
    vk = getattr(key, "vk", None)
    return f"vk{vk}" if vk is not None else str(key)


class GlobalHotkeyAdapter:
    def __init__(self, engine: TriggerEngine) -> None:
        self._engine = engine
        self._listener: Optional[object] = None
        self._lock = threading.Lock()
        self._modifiers = Modifier.NONE
        self._held: set[str] = set()

    def modifiers_held(self) -> bool:
        with self._lock:
            return bool(self._modifiers & DEVICE_INDEPENDENT)

    def start(self) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        if self._listener is not None:
            return
        self._listener = keyboard.Listener(on_press=self._on_press, on_release=self._on_release)
        self._listener.start()

    def stop(self) -> None:
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None

    def _on_press(self, key: object) -> None:
        name = _key_name(key)
        bit = MODIFIER_KEYS.get(name)
        with self._lock:
            repeat = name in self._held
            self._held.add(name)
            if bit is not None:
                if bit == Modifier.CAPS_LOCK:
                    if not repeat:
                        self._modifiers ^= Modifier.CAPS_LOCK
                else:
                    self._modifiers |= bit
            mods = self._modifiers
        if bit is not None:
            if bit != Modifier.CAPS_LOCK:
                self._engine.on_modifier_change(ModifierEvent(key=name, pressed=True, modifiers=mods))
            return
        if repeat:
            mods |= Modifier.REPEAT
        self._engine.on_key_down(KeyEvent(key=name, modifiers=mods))

    def _on_release(self, key: object) -> None:
        name = _key_name(key)
        bit = MODIFIER_KEYS.get(name)
        with self._lock:
            self._held.discard(name)
            if bit is not None and bit != Modifier.CAPS_LOCK:
                siblings = [k for k in self._held if MODIFIER_KEYS.get(k) == bit]
                if not siblings:
                    self._modifiers &= ~bit
            mods = self._modifiers
        if bit is not None and bit != Modifier.CAPS_LOCK:
            self._engine.on_modifier_change(ModifierEvent(key=name, pressed=False, modifiers=mods))
