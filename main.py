"""Application entrypoint."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from accessibility import AccessibilityInserter, AccessibilityPermission, MacFocusedElementProvider
from auto_paste import ClipboardPasteService
from config import DURATION_PRESETS, MODEL_PRESETS, JsonConfigStore
from correction_store import CorrectionStore
from grammar import GrammarCorrector
from hotkey import GlobalHotkeyAdapter, TriggerEngine, parse_combo
from language import LanguageDetector
from models import HotkeyBindings, RecordingPhase, RecordingState, TriggerSignal
from overlay import OverlayWindow
from recorder import SoundDeviceRecorder
from session_controller import PipelineController
from text_inserter import TextInserter
from transcriber import DashscopeTranscriber, WhisperTranscriber

try:
    from PySide6.QtCore import QObject, QSize, QTimer, Signal
    from PySide6.QtGui import QAction, QBrush, QColor, QIcon, QPainter, QPixmap
    from PySide6.QtWidgets import (
        QApplication,
        QFileDialog,
        QInputDialog,
        QMenu,
        QMessageBox,
        QSystemTrayIcon,
    )
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger(__name__)


def _setup_logging(log_dir: Path) -> None:
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / "dictation.log", encoding="utf-8"),
            logging.StreamHandler(sys.stdout),
        ],
    )


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"      # grey
ICON_RECORDING = "#FF4444"  # red
ICON_BUSY = "#4488FF"      # blue
ICON_ERROR = "#FF8800"     # orange

_ICON_FOR_PHASE = {
    RecordingPhase.RECORDING: ICON_RECORDING,
    RecordingPhase.TRANSCRIBING: ICON_BUSY,
    RecordingPhase.INSERTING: ICON_BUSY,
    RecordingPhase.DOWNLOADING_MODEL: ICON_BUSY,
    RecordingPhase.ERROR: ICON_ERROR,
}

LEVEL_REFRESH_MS = 100


class UIBridge(QObject):
    state_signal = Signal(object)  # RecordingState


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store = JsonConfigStore()
        _setup_logging(self.config_store.data_dir())

        self.overlay = OverlayWindow()
        self.ui = UIBridge()
        self.ui.state_signal.connect(self._on_state_change_ui)

        self.corrections = CorrectionStore(self.config_store.data_dir() / "corrections.json")
        self.corrections.load()
        self.permission = AccessibilityPermission()

        self.trigger = TriggerEngine(
            emit=lambda signal: self.controller.post_signal(signal),
            bindings=self._initial_bindings(),
            permission=self.permission,
        )
        self.hotkey = GlobalHotkeyAdapter(self.trigger)
        inserter = TextInserter(
            primary=AccessibilityInserter(MacFocusedElementProvider()),
            fallback=ClipboardPasteService(),
            modifiers_held=self.hotkey.modifiers_held,
        )
        self.controller = PipelineController(
            recorder=SoundDeviceRecorder(),
            transcriber=WhisperTranscriber(model_name=self.config_store.get_model()),
            language_detector=LanguageDetector(),
            grammar=GrammarCorrector(),
            corrections=self.corrections,
            inserter=inserter,
            fallback_transcriber=self._cloud_transcriber(self.config_store.get_api_key()),
            max_recording_s=self.config_store.get_max_recording_seconds(),
            on_state_change=self._on_state_change,
        )
        self.controller.attach_trigger_engine(self.trigger)

        self._level_timer = QTimer()
        self._level_timer.timeout.connect(self._refresh_levels)

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self.tray.setToolTip("Dictation — Ready")
        self._setup_menu()
        self.tray.show()

    @staticmethod
    def _cloud_transcriber(api_key: str) -> DashscopeTranscriber | None:
        return DashscopeTranscriber(api_key=api_key) if api_key else None

    def _bindings_from_config(self, trigger_key: str | None = None, correction: str | None = None) -> HotkeyBindings:
        key, modifiers = parse_combo(correction or self.config_store.get_correction_hotkey())
        return HotkeyBindings(
            trigger_key=trigger_key or self.config_store.get_hotkey(),
            double_press_window_s=self.config_store.get_double_press_window(),
            correction_key=key,
            correction_modifiers=modifiers,
        )

    def _initial_bindings(self) -> HotkeyBindings:
        try:
            return TriggerEngine.validated(self._bindings_from_config())
        except ValueError as exc:
            logger.warning(f"Invalid hotkey config, using defaults: {exc}")
            return HotkeyBindings()

    def _setup_menu(self) -> None:
        menu = QMenu()

        entries = (
            ("Start / Stop Dictation", self.controller.toggle_recording),
            ("Correct Last Result", lambda: self.controller.post_signal(TriggerSignal.OPEN_CORRECTION)),
            None,
            ("Set Trigger Key", self._set_hotkey),
            ("Set Correction Hotkey", self._set_correction_hotkey),
            ("Max Recording Length", self._set_max_duration),
            ("Speech Model", self._choose_model),
            ("Set API Key", self._set_api_key),
            None,
            ("Export Corrections", self._export_corrections),
            ("Import Corrections", self._import_corrections),
            ("Grant Accessibility Access", self._request_permission),
            None,
            ("Quit", self.quit),
        )
        for entry in entries:
            if entry is None:
                menu.addSeparator()
                continue
            label, handler = entry
            action = QAction(label, menu)
            action.triggered.connect(handler)
            menu.addAction(action)

        self._menu = menu
        self.tray.setContextMenu(menu)

    # ------------------------------------------------------------------
    # Settings dialogs
    # ------------------------------------------------------------------

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(None, "API Key", "DashScope API key (cloud fallback)")
        if not ok:
            return
        self.config_store.set_api_key(value)
        self.controller.set_fallback_transcriber(self._cloud_transcriber(value))
        QMessageBox.information(None, "Saved", "API key saved and applied.")

    def _set_hotkey(self) -> None:
        value, ok = QInputDialog.getText(
            None, "Trigger Key", "Modifier to double-press and hold, e.g. alt_r or cmd_r",
            text=self.config_store.get_hotkey(),
        )
        if not ok or not value:
            return
        if self._rebind(trigger_key=value.strip()):
            self.config_store.set_hotkey(value.strip())

    def _set_correction_hotkey(self) -> None:
        value, ok = QInputDialog.getText(
            None, "Correction Hotkey", "Key combination, e.g. cmd+shift+c",
            text=self.config_store.get_correction_hotkey(),
        )
        if not ok or not value:
            return
        if self._rebind(correction=value.strip()):
            self.config_store.set_correction_hotkey(value.strip())

    def _rebind(self, trigger_key: str | None = None, correction: str | None = None) -> bool:
        try:
            self.controller.rebind_hotkeys(self._bindings_from_config(trigger_key, correction))
        except ValueError as exc:
            QMessageBox.warning(None, "Invalid Hotkey", str(exc))
            return False
        QMessageBox.information(None, "Saved", "Hotkey saved and applied.")
        return True

    def _set_max_duration(self) -> None:
        labels = [f"{name} ({seconds}s)" if seconds else name for name, seconds in DURATION_PRESETS]
        current = self.config_store.get_max_recording_seconds()
        index = next((i for i, (_, s) in enumerate(DURATION_PRESETS) if s == current), 1)
        choice, ok = QInputDialog.getItem(None, "Max Recording Length", "Stop recording after", labels, index, False)
        if not ok:
            return
        seconds = DURATION_PRESETS[labels.index(choice)][1]
        self.config_store.set_max_recording_seconds(seconds)
        self.controller.set_max_recording_seconds(seconds)

    def _choose_model(self) -> None:
        current = self.config_store.get_model()
        index = MODEL_PRESETS.index(current) if current in MODEL_PRESETS else 0
        choice, ok = QInputDialog.getItem(None, "Speech Model", "Whisper model", list(MODEL_PRESETS), index, False)
        if not ok or choice == current:
            return
        self.config_store.set_model(choice)
        self.controller.load_model(choice)

    def _export_corrections(self) -> None:
        path, _ = QFileDialog.getSaveFileName(None, "Export Corrections", "corrections.json", "JSON (*.json)")
        if not path:
            return
        try:
            Path(path).write_text(self.controller.export_corrections(), encoding="utf-8")
        except OSError as exc:
            QMessageBox.warning(None, "Export Failed", str(exc))

    def _import_corrections(self) -> None:
        path, _ = QFileDialog.getOpenFileName(None, "Import Corrections", "", "JSON (*.json)")
        if not path:
            return
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            QMessageBox.warning(None, "Import Failed", str(exc))
            return
        if not self.controller.import_corrections(data):
            QMessageBox.warning(None, "Import Failed", "The file is not a valid corrections export.")
            return
        QMessageBox.information(None, "Imported", f"{len(self.controller.corrections())} corrections loaded.")

    def _request_permission(self) -> None:
        if self.permission.request():
            QMessageBox.information(None, "Accessibility", "Accessibility access is granted.")
        else:
            QMessageBox.information(
                None, "Accessibility", "Enable this app under Privacy & Security > Accessibility, then retry."
            )

    # ------------------------------------------------------------------
    # Correction flow
    # ------------------------------------------------------------------

    def _show_correction_dialog(self) -> None:
        result = self.controller.last_result
        words = list(dict.fromkeys(w.strip(".,!?;:\"'") for w in result.words)) if result else []
        words = [w for w in words if w]
        if not words:
            self.controller.dismiss_correction()
            return
        wrong, ok = QInputDialog.getItem(None, "Correct", "Which word was wrong?", words, 0, True)
        if not ok or not wrong.strip():
            self.controller.dismiss_correction()
            return
        correct, ok = QInputDialog.getText(None, "Correct", f"Correct text for '{wrong}':", text=wrong)
        if not ok or not correct.strip():
            self.controller.dismiss_correction()
            return
        always = QMessageBox.question(
            None, "Correct", "Always replace this automatically?",
            QMessageBox.Yes | QMessageBox.No, QMessageBox.Yes,
        )
        self.controller.submit_correction(wrong, correct, always_replace=always == QMessageBox.Yes)

    # ------------------------------------------------------------------
    # Callbacks (called from pipeline threads → emit signals for UI thread)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: RecordingState, to_state: RecordingState) -> None:
        self.ui.state_signal.emit(to_state)

    # ------------------------------------------------------------------
    # UI thread handlers (safe for Qt)
    # ------------------------------------------------------------------

    def _on_state_change_ui(self, state: RecordingState) -> None:
        self.tray.setIcon(_create_icon(_ICON_FOR_PHASE.get(state.phase, ICON_IDLE)))
        self.tray.setToolTip(f"Dictation — {state.phase.value.replace('_', ' ').title()}")
        self.overlay.show_state(state)
        if state.phase == RecordingPhase.RECORDING:
            self._level_timer.start(LEVEL_REFRESH_MS)
        else:
            self._level_timer.stop()
        if state.phase == RecordingPhase.SHOWING_CORRECTION:
            # Let the tray menu close before the modal dialogs open.
            QTimer.singleShot(0, self._show_correction_dialog)

    def _refresh_levels(self) -> None:
        self.overlay.show_levels(self.controller.amplitudes)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        self.controller.start()
        self.controller.load_model(self.config_store.get_model())
        self.trigger.request_permission()
        try:
            self.hotkey.start()
        except Exception as exc:
            logger.warning(f"Hotkey listener unavailable: {exc}")
            self.overlay.show_state(RecordingState.error(f"Hotkey disabled: {exc}"))
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.controller.shutdown()
        self.app.quit()


def main() -> int:
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
