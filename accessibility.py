"""Direct text injection into the focused UI element.

``AccessibilityInserter`` holds the insertion algorithm and talks to a
``FocusedElementProvider``. The macOS provider is backed by the
ApplicationServices accessibility API (pyobjc); on other platforms no
element is ever found and callers fall back to clipboard paste.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

from interfaces import FocusedElement, FocusedElementProvider

try:
    import ApplicationServices
except Exception:  # pragma: no cover
    ApplicationServices = None  # type: ignore

logger = logging.getLogger(__name__)

AX_SUCCESS = 0


class AccessibilityInserter:
    def __init__(self, provider: FocusedElementProvider) -> None:
        self._provider = provider

    def insert(self, text: str) -> bool:
        element = self._provider.focused_element()
        if element is None:
            logger.info("No focused element available")
            return False

        position = 0
        selection = element.selected_range()
        if selection is not None:
            position, length = selection
            logger.debug(f"Cursor/selection position: {position}, length: {length}")
        else:
            logger.debug("Could not read selection range, inserting at position 0")

        current = element.value()
        if current is not None:
            if 0 <= position <= len(current):
                prefix, suffix = current[:position], current[position:]
            else:
                prefix, suffix = current, ""
                position = len(current)
            logger.debug(f"Inserting at {position}: prefix={len(prefix)} chars, suffix={len(suffix)} chars")
            if element.set_value(prefix + text + suffix):
                element.set_selected_range(position + len(text), 0)
                logger.info(f"Text inserted via element value at position {position}")
                return True
            logger.info("Setting element value failed")

        ok = element.set_selected_text(text)
        logger.info(f"Set selected text result: {'success' if ok else 'failure'}")
        return ok


class MacFocusedElement:
    def __init__(self, ref: Any) -> None:
        self._ref = ref

    def _copy(self, attribute: str) -> Any:
        err, value = ApplicationServices.AXUIElementCopyAttributeValue(self._ref, attribute, None)
        return value if err == AX_SUCCESS else None

    def _set(self, attribute: str, value: Any) -> bool:
        err = ApplicationServices.AXUIElementSetAttributeValue(self._ref, attribute, value)
        return err == AX_SUCCESS

    def value(self) -> Optional[str]:
        value = self._copy("AXValue")
        return str(value) if isinstance(value, str) else None

    def selected_range(self) -> Optional[tuple[int, int]]:
        ax_range = self._copy("AXSelectedTextRange")
        if ax_range is None:
            return None
        ok, cf_range = ApplicationServices.AXValueGetValue(
            ax_range, ApplicationServices.kAXValueCFRangeType, None
        )
        if not ok or cf_range is None:
            return None
        return int(cf_range[0]), int(cf_range[1])

    def set_value(self, value: str) -> bool:
        return self._set("AXValue", value)

    def set_selected_range(self, location: int, length: int) -> bool:
        ax_range = ApplicationServices.AXValueCreate(
            ApplicationServices.kAXValueCFRangeType, (location, length)
        )
        return ax_range is not None and self._set("AXSelectedTextRange", ax_range)

    def set_selected_text(self, text: str) -> bool:
        return self._set("AXSelectedText", text)


class MacFocusedElementProvider:
    def focused_element(self) -> Optional[FocusedElement]:
        if ApplicationServices is None or sys.platform != "darwin":
            return None
        system_wide = ApplicationServices.AXUIElementCreateSystemWide()
        err, element = ApplicationServices.AXUIElementCopyAttributeValue(
            system_wide, "AXFocusedUIElement", None
        )
        logger.debug(f"Focused element lookup result: {err} (0 = success)")
        if err != AX_SUCCESS or element is None:
            return None
        return MacFocusedElement(element)


class AccessibilityPermission:
    """Accessibility trust is what lets us observe keys and write into other apps."""

    def is_granted(self) -> bool:
        if ApplicationServices is None or sys.platform != "darwin":
            return True
        return bool(ApplicationServices.AXIsProcessTrusted())

    def request(self) -> bool:
        if ApplicationServices is None or sys.platform != "darwin":
            return True
        options = {ApplicationServices.kAXTrustedCheckOptionPrompt: True}
        return bool(ApplicationServices.AXIsProcessTrustedWithOptions(options))
