"""Speech-to-text adapters.

``WhisperTranscriber`` runs faster-whisper locally and is the primary
engine. ``DashscopeTranscriber`` sends the clip to DashScope
qwen3-asr-flash and is only used as a fallback when an API key is set.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import time
import wave
from typing import Any, Optional

from errors import (
    ASR_PROTOCOL_ERROR,
    AUTH_FAILED,
    NETWORK_ERROR,
    CloudTranscriptionError,
    EmptyResultError,
    LowConfidenceError,
    ModelLoadError,
    ModelNotLoadedError,
)
from interfaces import ProgressCallback
from models import Transcription
from recorder import pcm16_from_float

try:
    from faster_whisper import WhisperModel
except Exception:  # pragma: no cover
    WhisperModel = None  # type: ignore

try:
    from huggingface_hub import snapshot_download
    from tqdm import tqdm
except Exception:  # pragma: no cover
    snapshot_download = None  # type: ignore
    tqdm = None  # type: ignore

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

CLOUD_CONFIDENCE = 1.0

# Files faster-whisper needs from a CTranslate2 model repo.
MODEL_FILES = ["config.json", "preprocessor_config.json", "model.bin", "tokenizer.json", "vocabulary.*"]


def model_repo_id(name: str) -> str:
    """Map a size name like ``small`` or ``distil-large-v3`` to its hub repo."""
    if "/" in name:
        return name
    if name.startswith("distil-"):
        return f"Systran/faster-distil-whisper-{name[len('distil-'):]}"
    return f"Systran/faster-whisper-{name}"


def _progress_bar_class(on_progress: ProgressCallback) -> type:
    """tqdm subclass that forwards completed/total of every bar to ``on_progress``."""

    class _ProgressBar(tqdm):
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            kwargs.pop("name", None)
            super().__init__(*args, **kwargs)
            self._completed = kwargs.get("initial", 0) or 0

        def update(self, n: Optional[float] = 1) -> Optional[bool]:
            self._completed += n or 0
            if self.total:
                on_progress(min(self._completed / self.total, 1.0))
            return super().update(n)

    return _ProgressBar


class WhisperTranscriber:
    def __init__(
        self,
        model_name: str = "base",
        device: str = "auto",
        compute_type: str = "default",
        beam_size: int = 5,
        low_confidence_threshold: float = 0.4,
    ) -> None:
        self._model_name = model_name
        self._device = device
        self._compute_type = compute_type
        self._beam_size = beam_size
        self._low_confidence_threshold = low_confidence_threshold
        self._model: Any = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_model_loaded(self) -> bool:
        return self._model is not None

    def load_model(
        self,
        model_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Load (downloading if needed) a model; the old one stays on failure."""
        if WhisperModel is None:
            raise ModelLoadError("faster-whisper is not installed")
        name = model_name or self._model_name
        reported = [0.0]

        def report(fraction: float) -> None:
            # Several bars may report; only ever move forward.
            if on_progress and fraction > reported[0]:
                reported[0] = fraction
                on_progress(fraction)

        if on_progress:
            on_progress(0.0)
        logger.info(f"Loading whisper model {name} ({self._device}, {self._compute_type})")
        start = time.perf_counter()
        try:
            path = self._fetch(name, report)
            model = WhisperModel(path, device=self._device, compute_type=self._compute_type)
        except Exception as exc:
            raise ModelLoadError(f"failed to load {name}: {exc}") from exc
        with self._lock:
            self._model = model
            self._model_name = name
        logger.info(f"Whisper model {name} ready in {time.perf_counter() - start:.2f}s")
        report(1.0)

    @staticmethod
    def _fetch(name: str, report: ProgressCallback) -> str:
        """Local directory for ``name``, downloading it from the hub first if needed."""
        if os.path.isdir(name) or snapshot_download is None:
            return name
        logger.info(f"Fetching {model_repo_id(name)}")
        return snapshot_download(
            model_repo_id(name),
            allow_patterns=MODEL_FILES,
            tqdm_class=_progress_bar_class(report),
        )

    def transcribe(self, samples: Any, prompt_bias: Optional[str] = None) -> Transcription:
        with self._lock:
            model = self._model
        if model is None:
            raise ModelNotLoadedError()

        start = time.perf_counter()
        segments_iter, info = model.transcribe(
            samples,
            beam_size=self._beam_size,
            temperature=0.0,
            initial_prompt=prompt_bias,
        )
        segments = list(segments_iter)
        logger.info(f"Whisper finished in {time.perf_counter() - start:.2f}s ({len(segments)} segments)")
        if not segments:
            raise EmptyResultError()

        text = "".join(segment.text for segment in segments).strip()
        language = getattr(info, "language", "") or ""
        if not text:
            raise EmptyResultError()

        # avg_logprob sits roughly in [-1, 0]; shift it onto [0, 1].
        avg_logprob = sum(segment.avg_logprob for segment in segments) / len(segments)
        confidence = min(max(avg_logprob + 1.0, 0.0), 1.0)
        if confidence < self._low_confidence_threshold:
            raise LowConfidenceError(text, language)
        return Transcription(text=text, language=language, confidence=confidence)


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    wav_bytes = buf.getvalue()
    return base64.b64encode(wav_bytes).decode("ascii")


class DashscopeTranscriber:
    def __init__(
        self,
        api_key: str,
        model: str = "qwen3-asr-flash",
        sample_rate: int = 16000,
        request_timeout_s: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._sample_rate = sample_rate
        self._request_timeout_s = request_timeout_s

    @property
    def is_model_loaded(self) -> bool:
        return True

    def load_model(
        self,
        model_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        if model_name:
            self._model = model_name
        if on_progress:
            on_progress(1.0)

    def transcribe(self, samples: Any, prompt_bias: Optional[str] = None) -> Transcription:
        if dashscope is None:
            raise CloudTranscriptionError("dashscope is not installed")
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            raise CloudTranscriptionError("No API key configured", code=AUTH_FAILED)

        wav_b64 = _pcm_to_wav_base64(pcm16_from_float(samples), self._sample_rate, 1)
        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": prompt_bias or ""}]},
                    {"role": "user", "content": [{"audio": f"data:audio/wav;base64,{wav_b64}"}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
            latest_text = ""
            language = ""
            for chunk in response:
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
                language = self._extract_language(chunk) or language
        except Exception as exc:
            raise self._to_error(exc) from exc

        latest_text = latest_text.strip()
        if not latest_text:
            raise EmptyResultError("cloud returned no text")
        logger.info(f"Cloud transcription returned {len(latest_text)} chars")
        return Transcription(text=latest_text, language=language, confidence=CLOUD_CONFIDENCE)

    @staticmethod
    def _message(chunk: object) -> dict:
        if isinstance(chunk, dict):
            choices = chunk.get("output", {}).get("choices", [])
            if choices:
                return choices[0].get("message", {})
        return {}

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        content = self._message(chunk).get("content", [])
        if not content:
            return ""
        value = content[0]
        if isinstance(value, dict):
            return str(value.get("text", ""))
        return ""

    def _extract_language(self, chunk: object) -> str:
        annotations = self._message(chunk).get("annotations", [])
        if annotations and isinstance(annotations[0], dict):
            return str(annotations[0].get("language", ""))
        return ""

    def _to_error(self, exc: Exception) -> CloudTranscriptionError:
        """Map an SDK/network exception to a typed transcription error."""
        message = str(exc)
        low = message.lower()
        if "401" in low or "auth" in low or "api key" in low:
            return CloudTranscriptionError(message, code=AUTH_FAILED, retryable=False)
        if "timeout" in low or "network" in low or "connection" in low:
            return CloudTranscriptionError(message, code=NETWORK_ERROR, retryable=True)
        return CloudTranscriptionError(message, code=ASR_PROTOCOL_ERROR, retryable=True)
