"""Two-tier text insertion: focused-element write first, clipboard paste second."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from accessibility import AccessibilityInserter
from interfaces import PasteService
from models import InsertMethod, InsertResult

logger = logging.getLogger(__name__)


class TextInserter:
    def __init__(
        self,
        primary: Optional[AccessibilityInserter],
        fallback: PasteService,
        modifiers_held: Optional[Callable[[], bool]] = None,
        modifier_retries: int = 10,
        modifier_poll_s: float = 0.05,
        focus_settle_s: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._modifiers_held = modifiers_held or (lambda: False)
        self._modifier_retries = modifier_retries
        self._modifier_poll_s = modifier_poll_s
        self._focus_settle_s = focus_settle_s
        self._sleep = sleep

    def insert(self, text: str) -> InsertResult:
        logger.info(f"insert() called with {len(text)} chars")
        self._wait_for_modifier_release()
        if self._focus_settle_s > 0:
            self._sleep(self._focus_settle_s)

        if self._try_primary(text):
            logger.info("Accessibility insertion succeeded")
            return InsertResult(success=True, method=InsertMethod.ACCESSIBILITY)

        logger.info("Accessibility insertion failed, using clipboard fallback")
        paste = self._fallback.paste_text(text)
        logger.info(
            f"Clipboard fallback result: success={paste.success}, reason={paste.reason}, "
            f"restored={paste.clipboard_restored}"
        )
        return InsertResult(success=paste.success, method=InsertMethod.CLIPBOARD, reason=paste.reason)

    def _try_primary(self, text: str) -> bool:
        if self._primary is None:
            return False
        try:
            return bool(self._primary.insert(text))
        except Exception:
            logger.exception("Accessibility insertion raised")
            return False

    def _wait_for_modifier_release(self) -> None:
        for _ in range(self._modifier_retries):
            if not self._modifiers_held():
                return
            self._sleep(self._modifier_poll_s)
        if self._modifiers_held():
            logger.warning("Modifiers still held after waiting, inserting anyway")
