"""Protocol interfaces used by PipelineController and TextInserter."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

from models import CapturedAudio, InsertResult, PasteResult, Transcription

AmplitudeCallback = Callable[[float], None]
ProgressCallback = Callable[[float], None]


class Recorder(Protocol):
    def start(self, on_amplitude: Optional[AmplitudeCallback] = None) -> None: ...

    def stop(self) -> Optional[CapturedAudio]: ...


class Transcriber(Protocol):
    @property
    def is_model_loaded(self) -> bool: ...

    def load_model(
        self,
        model_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None: ...

    def transcribe(self, samples: Any, prompt_bias: Optional[str] = None) -> Transcription: ...


class LanguageDetector(Protocol):
    def detect(self, text: str, hint: Optional[str] = None) -> tuple[str, str]: ...


class GrammarCorrector(Protocol):
    def correct(self, text: str, language: str) -> str: ...


class Inserter(Protocol):
    def insert(self, text: str) -> InsertResult: ...


class PasteService(Protocol):
    def paste_text(self, text: str) -> PasteResult: ...


class PermissionProvider(Protocol):
    def is_granted(self) -> bool: ...

    def request(self) -> bool: ...


class FocusedElement(Protocol):
    def value(self) -> Optional[str]: ...

    def selected_range(self) -> Optional[tuple[int, int]]: ...

    def set_value(self, value: str) -> bool: ...

    def set_selected_range(self, location: int, length: int) -> bool: ...

    def set_selected_text(self, text: str) -> bool: ...


class FocusedElementProvider(Protocol):
    def focused_element(self) -> Optional[FocusedElement]: ...

