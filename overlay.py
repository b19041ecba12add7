"""Floating status window for the dictation pipeline."""

from __future__ import annotations

from models import RecordingPhase, RecordingState

try:
    from PySide6.QtCore import Qt, QTimer
    from PySide6.QtWidgets import QApplication, QLabel, QVBoxLayout, QWidget
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QTimer = None  # type: ignore
    QApplication = None  # type: ignore
    QLabel = object  # type: ignore
    QWidget = object  # type: ignore
    QVBoxLayout = object  # type: ignore

_BASE_STYLE = "font-size: 18px; padding: 16px; border-radius: 12px;"
_NORMAL_STYLE = "color: white; background: rgba(0,0,0,190);" + _BASE_STYLE
_ERROR_STYLE = "color: #FF6B6B; background: rgba(0,0,0,210);" + _BASE_STYLE

LEVEL_BARS = 12


def level_meter(amplitudes: list[float], bars: int = LEVEL_BARS) -> str:
    """Render the most recent amplitudes as a row of block characters."""
    blocks = " ▁▂▃▄▅▆▇█"
    recent = amplitudes[-bars:]
    return "".join(blocks[min(int(a * (len(blocks) - 1) + 0.5), len(blocks) - 1)] for a in recent)


def status_text(state: RecordingState) -> str:
    phase = state.phase
    if phase == RecordingPhase.DOWNLOADING_MODEL:
        return f"Loading speech model... {int(state.progress * 100)}%"
    if phase == RecordingPhase.RECORDING:
        return "🎙️ Listening..."
    if phase == RecordingPhase.TRANSCRIBING:
        return "Transcribing..."
    if phase == RecordingPhase.INSERTING:
        return "Inserting..."
    if phase == RecordingPhase.SHOWING_CONFIRMATION:
        return f"✓ {state.text}"
    if phase == RecordingPhase.SHOWING_CORRECTION:
        return "Correct the last dictation"
    if phase == RecordingPhase.ERROR:
        return f"⚠️ {state.message}"
    return ""


class OverlayWindow(QWidget):
    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(
            Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool
        )
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setFixedWidth(600)

        self._label = QLabel("")
        self._label.setWordWrap(True)
        self._label.setStyleSheet(_NORMAL_STYLE)

        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.addWidget(self._label)
        self.setLayout(layout)

        self._hide_timer: QTimer | None = None
        self._phase = RecordingPhase.IDLE

    def _center_top(self) -> None:
        """Position the window at the top center of the primary screen."""
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + 40  # below menu bar
        self.move(x, y)

    def show_state(self, state: RecordingState) -> None:
        self._phase = state.phase
        if state.phase == RecordingPhase.IDLE:
            self.hide_with_delay(400)
            return
        self._label.setStyleSheet(_ERROR_STYLE if state.phase == RecordingPhase.ERROR else _NORMAL_STYLE)
        self.set_text(status_text(state))

    def show_levels(self, amplitudes: list[float]) -> None:
        if self._phase != RecordingPhase.RECORDING:
            return
        self._label.setText(f"🎙️ Listening...  {level_meter(amplitudes)}")

    def set_text(self, text: str) -> None:
        """Update overlay text and show at screen top center."""
        self._cancel_hide_timer()
        self._label.setText(text)
        self._center_top()
        self.show()

    def hide_with_delay(self, delay_ms: int = 400) -> None:
        self._cancel_hide_timer()
        if QTimer is not None:
            self._hide_timer = QTimer()
            self._hide_timer.setSingleShot(True)
            self._hide_timer.timeout.connect(self.hide)
            self._hide_timer.start(delay_ms)

    def _cancel_hide_timer(self) -> None:
        if self._hide_timer is not None:
            self._hide_timer.stop()
            self._hide_timer = None
