"""Clipboard paste service, the fallback path for text insertion."""

from __future__ import annotations

import logging
import sys
import time

from errors import NO_ACTIVE_TARGET
from models import PasteResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

logger = logging.getLogger(__name__)


class ClipboardPasteService:
    def __init__(self, restore_delay_s: float = 0.5, platform: str | None = None) -> None:
        self._restore_delay_s = restore_delay_s
        self._platform = platform or sys.platform

    def paste_text(self, text: str) -> PasteResult:
        if not text.strip():
            return PasteResult(success=False, reason="empty text", clipboard_restored=True)
        if pyperclip is None or Controller is None or Key is None:
            return PasteResult(
                success=False,
                reason="clipboard/keyboard dependency missing",
                clipboard_restored=False,
            )

        try:
            old_clip: str | None = pyperclip.paste()
        except Exception as exc:
            logger.warning(f"Could not read clipboard: {exc}")
            old_clip = None

        success = False
        reason = ""
        restored = False
        try:
            pyperclip.copy(text)
            logger.info("Clipboard set, posting paste shortcut")
            self._send_paste()
            time.sleep(self._restore_delay_s)
            success, reason = True, "ok"
        except Exception as exc:
            logger.warning(f"Clipboard paste failed: {exc}")
            reason = f"{NO_ACTIVE_TARGET}: {exc}"
        finally:
            restored = self._restore(old_clip)
        return PasteResult(success=success, reason=reason, clipboard_restored=restored)

    def _send_paste(self) -> None:
        modifier = Key.cmd if self._platform == "darwin" else Key.ctrl
        keyboard = Controller()
        keyboard.press(modifier)
        try:
            keyboard.press("v")
            keyboard.release("v")
        finally:
            keyboard.release(modifier)

    def _restore(self, old_clip: str | None) -> bool:
        try:
            pyperclip.copy(old_clip if old_clip is not None else "")
        except Exception as exc:
            logger.warning(f"Could not restore clipboard: {exc}")
            return False
        logger.info("Clipboard restored")
        return True
