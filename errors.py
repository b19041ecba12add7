"""Shared error codes, user-facing messages and exceptions."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
MICROPHONE_ERROR = "MICROPHONE_ERROR"
MODEL_LOADING = "MODEL_LOADING"
MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
MODEL_NOT_LOADED = "MODEL_NOT_LOADED"
NO_SPEECH = "NO_SPEECH"
TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"
NO_ACTIVE_TARGET = "NO_ACTIVE_TARGET"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Permission denied. Enable microphone and accessibility access in system settings.",
    MICROPHONE_ERROR: "Microphone error, please try again.",
    MODEL_LOADING: "Model still loading, please wait...",
    MODEL_LOAD_FAILED: "Failed to load the speech model.",
    MODEL_NOT_LOADED: "Speech model is not loaded.",
    NO_SPEECH: "No speech detected.",
    TRANSCRIPTION_FAILED: "Transcription failed.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    ASR_PROTOCOL_ERROR: "ASR response format is invalid.",
    NO_ACTIVE_TARGET: "No active input target, result kept in clipboard.",
}


class DictationError(Exception):
    code = TRANSCRIPTION_FAILED

    def __init__(self, detail: str = "", code: str | None = None) -> None:
        super().__init__(detail or ERROR_MESSAGES.get(code or self.code, ""))
        if code is not None:
            self.code = code
        self.detail = detail

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES.get(self.code, ERROR_MESSAGES[TRANSCRIPTION_FAILED])


class DeviceError(DictationError):
    code = MICROPHONE_ERROR


class PermissionDeniedError(DictationError):
    code = PERMISSION_DENIED


class ModelLoadError(DictationError):
    code = MODEL_LOAD_FAILED


class TranscriptionError(DictationError):
    code = TRANSCRIPTION_FAILED


class ModelNotLoadedError(TranscriptionError):
    code = MODEL_NOT_LOADED


class EmptyResultError(TranscriptionError):
    code = NO_SPEECH


class LowConfidenceError(TranscriptionError):
    """Raised with the best-effort text when the model is unsure."""

    def __init__(self, text: str, language: str) -> None:
        super().__init__(f"low confidence result: {text!r}")
        self.text = text
        self.language = language


class CloudTranscriptionError(TranscriptionError):
    def __init__(self, detail: str, code: str = ASR_PROTOCOL_ERROR, retryable: bool = False) -> None:
        super().__init__(detail, code=code)
        self.retryable = retryable


def describe_error(exc: BaseException) -> str:
    """Message safe to show to the user for any failure."""
    if isinstance(exc, DictationError):
        return exc.user_message
    return ERROR_MESSAGES[TRANSCRIPTION_FAILED]
