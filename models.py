"""Core data models for the app."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntFlag
from pathlib import Path
from typing import Any, Optional


class RecordingPhase(str, Enum):
    IDLE = "IDLE"
    DOWNLOADING_MODEL = "DOWNLOADING_MODEL"
    RECORDING = "RECORDING"
    TRANSCRIBING = "TRANSCRIBING"
    INSERTING = "INSERTING"
    SHOWING_CONFIRMATION = "SHOWING_CONFIRMATION"
    SHOWING_CORRECTION = "SHOWING_CORRECTION"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RecordingState:
    """Exactly one phase is active; the payload fields belong to it.

    ``progress`` is only meaningful for DOWNLOADING_MODEL, ``started_at``
    for RECORDING, ``text`` for SHOWING_CONFIRMATION and ``message`` for
    ERROR.
    """

    phase: RecordingPhase
    progress: float = 0.0
    started_at: Optional[float] = None
    text: str = ""
    message: str = ""

    @classmethod
    def idle(cls) -> "RecordingState":
        return cls(RecordingPhase.IDLE)

    @classmethod
    def downloading_model(cls, progress: float) -> "RecordingState":
        return cls(RecordingPhase.DOWNLOADING_MODEL, progress=min(max(progress, 0.0), 1.0))

    @classmethod
    def recording(cls, started_at: float) -> "RecordingState":
        return cls(RecordingPhase.RECORDING, started_at=started_at)

    @classmethod
    def transcribing(cls) -> "RecordingState":
        return cls(RecordingPhase.TRANSCRIBING)

    @classmethod
    def inserting(cls) -> "RecordingState":
        return cls(RecordingPhase.INSERTING)

    @classmethod
    def showing_confirmation(cls, text: str) -> "RecordingState":
        return cls(RecordingPhase.SHOWING_CONFIRMATION, text=text)

    @classmethod
    def showing_correction(cls) -> "RecordingState":
        return cls(RecordingPhase.SHOWING_CORRECTION)

    @classmethod
    def error(cls, message: str) -> "RecordingState":
        return cls(RecordingPhase.ERROR, message=message)

    @property
    def is_idle(self) -> bool:
        return self.phase == RecordingPhase.IDLE


class TriggerSignal(str, Enum):
    CAPTURE_START = "capture_start"
    CAPTURE_STOP = "capture_stop"
    OPEN_CORRECTION = "open_correction"


class Modifier(IntFlag):
    NONE = 0
    SHIFT = 1 << 0
    CONTROL = 1 << 1
    ALT = 1 << 2
    CMD = 1 << 3
    FUNCTION = 1 << 4
    # Noise bits, stripped before any comparison.
    CAPS_LOCK = 1 << 8
    REPEAT = 1 << 9
    NUMERIC_PAD = 1 << 10


DEVICE_INDEPENDENT = Modifier.SHIFT | Modifier.CONTROL | Modifier.ALT | Modifier.CMD | Modifier.FUNCTION


@dataclass(frozen=True)
class ModifierEvent:
    """A change of one modifier key; ``modifiers`` is the mask after the change."""

    key: str
    pressed: bool
    modifiers: Modifier
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class KeyEvent:
    key: str
    modifiers: Modifier


@dataclass(frozen=True)
class HotkeyBindings:
    trigger_key: str = "alt_r"
    double_press_window_s: float = 0.4
    correction_key: str = "c"
    correction_modifiers: Modifier = Modifier.CMD | Modifier.SHIFT


@dataclass
class CapturedAudio:
    path: Optional[Path]
    samples: Any
    sample_rate: int = 16000
    duration_s: float = 0.0


@dataclass(frozen=True)
class Transcription:
    text: str
    language: str
    confidence: float


@dataclass(frozen=True)
class TranscriptionResult:
    raw_text: str
    corrected_text: str
    detected_language: str
    confidence: float
    duration_s: float
    processing_ms: int
    words: tuple[str, ...] = ()
    was_fallback: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class CorrectionEntry:
    wrong_text: str
    correct_text: str
    language: str
    occurrence_count: int = 1
    always_replace: bool = True
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def key(self) -> tuple[str, str]:
        return (self.wrong_text.lower(), self.language)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wrong_text": self.wrong_text,
            "correct_text": self.correct_text,
            "language": self.language,
            "occurrence_count": self.occurrence_count,
            "always_replace": self.always_replace,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CorrectionEntry":
        return cls(
            id=str(data["id"]),
            wrong_text=str(data["wrong_text"]),
            correct_text=str(data["correct_text"]),
            language=str(data.get("language", "en")),
            occurrence_count=int(data.get("occurrence_count", 1)),
            always_replace=bool(data.get("always_replace", True)),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_used_at=datetime.fromisoformat(data["last_used_at"]),
        )


@dataclass
class PasteResult:
    success: bool
    reason: str
    clipboard_restored: bool


class InsertMethod(str, Enum):
    ACCESSIBILITY = "accessibility"
    CLIPBOARD = "clipboard"


@dataclass
class InsertResult:
    success: bool
    method: InsertMethod
    reason: str = ""
