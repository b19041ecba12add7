"""State-machine based dictation pipeline orchestration.

All state lives on one coordinator thread: public methods, trigger
signals, worker results and timer expiries are posted onto its inbox and
applied there in order. Blocking collaborator calls (audio start/stop,
inference, grammar, insertion, model loading) run on a single worker
thread and report back through the inbox, so at most one capture cycle
is ever in flight.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Optional

from correction_store import CorrectionStore
from errors import (
    ERROR_MESSAGES,
    MODEL_LOADING,
    DeviceError,
    LowConfidenceError,
    TranscriptionError,
    describe_error,
)
from interfaces import GrammarCorrector, Inserter, LanguageDetector, Recorder, Transcriber
from models import (
    CapturedAudio,
    CorrectionEntry,
    HotkeyBindings,
    RecordingPhase,
    RecordingState,
    Transcription,
    TranscriptionResult,
    TriggerSignal,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[RecordingState, RecordingState], None]
AmplitudeListener = Callable[[float], None]

_STOP = object()

_MODEL_LOAD_PHASES = {
    RecordingPhase.IDLE,
    RecordingPhase.ERROR,
    RecordingPhase.DOWNLOADING_MODEL,
    RecordingPhase.SHOWING_CONFIRMATION,
}


class PipelineController:
    def __init__(
        self,
        recorder: Recorder,
        transcriber: Transcriber,
        language_detector: LanguageDetector,
        grammar: GrammarCorrector,
        corrections: CorrectionStore,
        inserter: Inserter,
        fallback_transcriber: Optional[Transcriber] = None,
        max_recording_s: float = 120.0,
        min_recording_s: float = 0.5,
        confirmation_s: float = 1.5,
        error_clear_s: float = 3.0,
        history_size: int = 50,
        amplitude_capacity: int = 120,
        low_confidence_floor: float = 0.4,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateCallback] = None,
        on_amplitude: Optional[AmplitudeListener] = None,
    ) -> None:
        self._recorder = recorder
        self._transcriber = transcriber
        self._fallback_transcriber = fallback_transcriber
        self._language_detector = language_detector
        self._grammar = grammar
        self._corrections = corrections
        self._inserter = inserter
        self._max_recording_s = max_recording_s
        self._min_recording_s = min_recording_s
        self._confirmation_s = confirmation_s
        self._error_clear_s = error_clear_s
        self._low_confidence_floor = low_confidence_floor
        self._clock = clock
        self._on_amplitude = on_amplitude

        self._lock = threading.RLock()
        self._state = RecordingState.idle()
        self._subscribers: list[StateCallback] = []
        if on_state_change is not None:
            self._subscribers.append(on_state_change)
        self._history: deque[TranscriptionResult] = deque(maxlen=history_size)
        self._amplitudes: deque[float] = deque(maxlen=amplitude_capacity)
        self._model_ready = transcriber.is_model_loaded

        # Touched only on the coordinator thread.
        self._generation = 0
        self._cycle = 0
        self._recording_started: Optional[float] = None
        self._timers: list[threading.Timer] = []
        self._trigger_engine: Any = None
        self._deferred_model: Optional[tuple[Optional[str]]] = None

        self._inbox: Queue[Any] = Queue()
        self._thread: Optional[threading.Thread] = None
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline-worker")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="pipeline-coordinator", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: float = 2.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._inbox.put(_STOP)
        thread.join(timeout=timeout)
        self._thread = None
        self._cancel_timers()
        self._worker.shutdown(wait=False)

    def flush(self, timeout: float = 2.0) -> bool:
        """Block until everything posted so far has been applied."""
        done = threading.Event()
        self._submit(done.set)
        return done.wait(timeout)

    def _run(self) -> None:
        while True:
            item = self._inbox.get()
            if item is _STOP:
                return
            fn, args = item
            try:
                fn(*args)
            except Exception:
                logger.exception(f"Pipeline handler {getattr(fn, '__name__', fn)} failed")

    def _submit(self, fn: Callable[..., None], *args: Any) -> None:
        self._inbox.put((fn, args))

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def model_ready(self) -> bool:
        return self._model_ready

    @property
    def last_result(self) -> Optional[TranscriptionResult]:
        with self._lock:
            return self._history[0] if self._history else None

    @property
    def history(self) -> list[TranscriptionResult]:
        with self._lock:
            return list(self._history)

    @property
    def amplitudes(self) -> list[float]:
        with self._lock:
            return list(self._amplitudes)

    @property
    def recording_duration(self) -> float:
        started = self._recording_started
        if self._state.phase != RecordingPhase.RECORDING or started is None:
            return 0.0
        return max(self._clock() - started, 0.0)

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Inbound entry points (thread safe)
    # ------------------------------------------------------------------

    def post_signal(self, signal: TriggerSignal) -> None:
        self._submit(self._handle_signal, signal)

    def toggle_recording(self) -> None:
        self._submit(self._handle_toggle)

    def submit_correction(self, wrong: str, correct: str, always_replace: bool = True) -> None:
        self._submit(self._handle_submit_correction, wrong, correct, always_replace)

    def dismiss_correction(self) -> None:
        self._submit(self._handle_dismiss_correction)

    def load_model(self, model_name: Optional[str] = None) -> None:
        self._submit(self._handle_load_model, model_name)

    def set_fallback_transcriber(self, transcriber: Optional[Transcriber]) -> None:
        self._submit(setattr, self, "_fallback_transcriber", transcriber)

    def set_max_recording_seconds(self, seconds: float) -> None:
        """Applies from the next capture; 0 disables the limit."""
        self._submit(setattr, self, "_max_recording_s", max(float(seconds), 0.0))

    def attach_trigger_engine(self, engine: Any) -> None:
        self._trigger_engine = engine

    def rebind_hotkeys(self, bindings: HotkeyBindings) -> None:
        if self._trigger_engine is None:
            raise RuntimeError("no trigger engine attached")
        self._trigger_engine.reconfigure(bindings)

    # Correction CRUD pass-through; the store serialises its own access.

    def add_correction(self, wrong: str, correct: str, language: str, always_replace: bool = True) -> CorrectionEntry:
        return self._corrections.add(wrong, correct, language, always_replace)

    def remove_correction(self, entry_id: str) -> bool:
        return self._corrections.remove(entry_id)

    def corrections(self) -> list[CorrectionEntry]:
        return self._corrections.all()

    def export_corrections(self) -> str:
        return self._corrections.export_snapshot()

    def import_corrections(self, data: str | bytes) -> bool:
        return self._corrections.import_snapshot(data)

    # ------------------------------------------------------------------
    # Coordinator-thread handlers
    # ------------------------------------------------------------------

    def _handle_signal(self, signal: TriggerSignal) -> None:
        phase = self._state.phase
        if signal == TriggerSignal.CAPTURE_START:
            if phase != RecordingPhase.IDLE:
                logger.info(f"Ignoring capture start while {phase.value}")
                return
            self._begin_recording()
        elif signal == TriggerSignal.CAPTURE_STOP:
            if phase != RecordingPhase.RECORDING:
                logger.debug(f"Ignoring capture stop while {phase.value}")
                return
            self._end_recording("trigger released")
        elif signal == TriggerSignal.OPEN_CORRECTION:
            if phase == RecordingPhase.IDLE and self.last_result is not None:
                self._transition(RecordingState.showing_correction())
            else:
                logger.info(f"Ignoring correction request while {phase.value}")

    def _handle_toggle(self) -> None:
        phase = self._state.phase
        if phase == RecordingPhase.IDLE:
            self._begin_recording()
        elif phase == RecordingPhase.RECORDING:
            self._end_recording("manual stop")
        else:
            logger.info(f"Ignoring toggle while {phase.value}")

    def _begin_recording(self) -> None:
        if not self._model_ready:
            self._fail(ERROR_MESSAGES[MODEL_LOADING])
            return
        with self._lock:
            self._amplitudes.clear()
        self._cycle += 1
        cycle = self._cycle
        self._recording_started = self._clock()
        self._transition(RecordingState.recording(self._recording_started))
        self._worker.submit(self._start_capture, cycle)
        if self._max_recording_s > 0:
            self._schedule(self._max_recording_s, self._on_max_duration)

    def _end_recording(self, reason: str) -> None:
        started = self._recording_started if self._recording_started is not None else self._clock()
        duration = max(self._clock() - started, 0.0)
        self._recording_started = None
        cycle = self._cycle
        if duration < self._min_recording_s:
            logger.info(f"Discarding {duration:.2f}s recording ({reason})")
            self._transition(RecordingState.idle())
            self._worker.submit(self._discard_capture)
            return
        logger.info(f"Recording stopped after {duration:.2f}s ({reason})")
        self._transition(RecordingState.transcribing())
        self._worker.submit(self._process_capture, cycle, duration)

    def _on_max_duration(self) -> None:
        if self._state.phase == RecordingPhase.RECORDING:
            self._end_recording("max duration reached")

    def _on_capture_failed(self, cycle: int, exc: BaseException) -> None:
        if cycle != self._cycle or self._state.phase != RecordingPhase.RECORDING:
            return
        self._recording_started = None
        self._fail(describe_error(exc))

    def _on_amplitude_sample(self, value: float) -> None:
        if self._state.phase != RecordingPhase.RECORDING:
            return
        with self._lock:
            self._amplitudes.append(value)
        if self._on_amplitude is not None:
            self._on_amplitude(value)

    def _on_transcribed(self, cycle: int, result: TranscriptionResult) -> None:
        if cycle != self._cycle or self._state.phase != RecordingPhase.TRANSCRIBING:
            return
        with self._lock:
            self._history.appendleft(result)
        self._transition(RecordingState.inserting())
        self._worker.submit(self._insert_text, cycle, result.corrected_text)

    def _on_inserted(self, cycle: int, text: str) -> None:
        if cycle != self._cycle or self._state.phase != RecordingPhase.INSERTING:
            return
        self._transition(RecordingState.showing_confirmation(text))
        self._schedule(self._confirmation_s, self._return_to_idle, RecordingPhase.SHOWING_CONFIRMATION)

    def _on_pipeline_failed(self, cycle: int, message: str) -> None:
        if cycle != self._cycle or self._state.phase != RecordingPhase.TRANSCRIBING:
            return
        self._fail(message)

    def _handle_submit_correction(self, wrong: str, correct: str, always_replace: bool) -> None:
        if self._state.phase != RecordingPhase.SHOWING_CORRECTION:
            logger.info("Ignoring correction submit outside the correction panel")
            return
        result = self.last_result
        language = result.detected_language if result is not None else "en"
        self._transition(RecordingState.idle())
        if wrong.strip() and correct.strip():
            self._worker.submit(self._corrections.add, wrong.strip(), correct.strip(), language, always_replace)
        self._run_deferred_model_load()

    def _handle_dismiss_correction(self) -> None:
        if self._state.phase == RecordingPhase.SHOWING_CORRECTION:
            self._transition(RecordingState.idle())
            self._run_deferred_model_load()

    def _handle_load_model(self, model_name: Optional[str]) -> None:
        if self._state.phase == RecordingPhase.SHOWING_CORRECTION:
            # The panel only closes on submit or dismiss; load afterwards.
            logger.info("Deferring model load until the correction panel closes")
            self._deferred_model = (model_name,)
            return
        if self._state.phase not in _MODEL_LOAD_PHASES:
            logger.warning(f"Model load requested while {self._state.phase.value}; ignoring")
            return
        self._model_ready = False
        self._transition(RecordingState.downloading_model(0.0))
        self._worker.submit(self._load_model, model_name)

    def _run_deferred_model_load(self) -> None:
        deferred, self._deferred_model = self._deferred_model, None
        if deferred is not None:
            self._handle_load_model(*deferred)

    def _on_model_progress(self, progress: float) -> None:
        if self._state.phase == RecordingPhase.DOWNLOADING_MODEL:
            self._transition(RecordingState.downloading_model(progress))

    def _on_model_loaded(self) -> None:
        self._model_ready = True
        if self._state.phase == RecordingPhase.DOWNLOADING_MODEL:
            self._transition(RecordingState.idle())

    def _on_model_failed(self, exc: BaseException) -> None:
        self._model_ready = self._transcriber.is_model_loaded
        if self._state.phase == RecordingPhase.DOWNLOADING_MODEL:
            self._fail(describe_error(exc))

    def _return_to_idle(self, expected: RecordingPhase) -> None:
        if self._state.phase == expected:
            self._transition(RecordingState.idle())

    def _fail(self, message: str) -> None:
        logger.warning(f"Pipeline error: {message}")
        self._transition(RecordingState.error(message))
        self._schedule(self._error_clear_s, self._return_to_idle, RecordingPhase.ERROR)

    def _transition(self, to_state: RecordingState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._cancel_timers()
        self._generation += 1
        with self._lock:
            self._state = to_state
            subscribers = list(self._subscribers)
        logger.debug(f"State {from_state.phase.value} -> {to_state.phase.value}")
        for callback in subscribers:
            try:
                callback(from_state, to_state)
            except Exception:
                logger.exception("State subscriber failed")

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule(self, delay: float, fn: Callable[..., None], *args: Any) -> None:
        generation = self._generation
        timer = threading.Timer(delay, self._submit, args=(self._fire_timer, generation, fn, args))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    def _fire_timer(self, generation: int, fn: Callable[..., None], args: tuple) -> None:
        if generation != self._generation:
            return
        fn(*args)

    def _cancel_timers(self) -> None:
        timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    # ------------------------------------------------------------------
    # Worker-thread jobs
    # ------------------------------------------------------------------

    def _start_capture(self, cycle: int) -> None:
        try:
            self._recorder.start(on_amplitude=lambda v: self._submit(self._on_amplitude_sample, v))
        except Exception as exc:
            logger.warning(f"Audio capture failed to start: {exc}")
            self._submit(self._on_capture_failed, cycle, exc)

    def _stop_capture(self) -> Optional[CapturedAudio]:
        try:
            return self._recorder.stop()
        except Exception as exc:
            raise DeviceError(f"failed to stop capture: {exc}") from exc

    def _discard_capture(self) -> None:
        audio: Optional[CapturedAudio] = None
        try:
            audio = self._stop_capture()
        except DeviceError as exc:
            logger.warning(str(exc))
        finally:
            _remove_temp_file(audio)

    def _process_capture(self, cycle: int, duration: float) -> None:
        audio: Optional[CapturedAudio] = None
        try:
            audio = self._stop_capture()
            if audio is None:
                raise DeviceError("no audio was captured")
            result = self._run_chain(audio, duration)
        except Exception as exc:
            if not isinstance(exc, TranscriptionError):
                logger.exception("Processing failed")
            else:
                logger.warning(f"Transcription failed: {exc}")
            self._submit(self._on_pipeline_failed, cycle, describe_error(exc))
            return
        finally:
            _remove_temp_file(audio)
        self._submit(self._on_transcribed, cycle, result)

    def _run_chain(self, audio: CapturedAudio, duration: float) -> TranscriptionResult:
        started = time.perf_counter()

        prompt_bias = self._corrections.prompt_bias()
        transcription, used_fallback = self._transcribe(audio.samples, prompt_bias)
        stage = time.perf_counter()
        logger.info(f"Transcription took {stage - started:.2f}s")

        language, _ = self._language_detector.detect(transcription.text, transcription.language or None)
        cleaned = self._grammar.correct(transcription.text, language)
        logger.info(f"Grammar took {time.perf_counter() - stage:.2f}s")
        final_text = self._corrections.apply_corrections(cleaned)
        words = tuple(final_text.split())

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"Total processing time: {elapsed_ms}ms")
        return TranscriptionResult(
            raw_text=transcription.text,
            corrected_text=final_text,
            detected_language=language,
            confidence=transcription.confidence,
            duration_s=duration,
            processing_ms=elapsed_ms,
            words=words,
            was_fallback=used_fallback,
        )

    def _transcribe(self, samples: Any, prompt_bias: Optional[str]) -> tuple[Transcription, bool]:
        try:
            return self._transcriber.transcribe(samples, prompt_bias), False
        except LowConfidenceError as exc:
            logger.info("Low confidence result, using it anyway")
            return Transcription(exc.text, exc.language, self._low_confidence_floor), False
        except TranscriptionError as exc:
            if self._fallback_transcriber is None:
                raise
            logger.warning(f"Local transcription failed ({exc}), trying cloud fallback")
        try:
            return self._fallback_transcriber.transcribe(samples, prompt_bias), True
        except LowConfidenceError as exc:
            return Transcription(exc.text, exc.language, self._low_confidence_floor), True

    def _insert_text(self, cycle: int, text: str) -> None:
        logger.info(f"Inserting text: {text[:20]!r}...")
        try:
            result = self._inserter.insert(text)
            logger.info(f"Insertion finished via {result.method.value} (success={result.success})")
        except Exception:
            logger.exception("Insertion raised")
        self._submit(self._on_inserted, cycle, text)

    def _load_model(self, model_name: Optional[str]) -> None:
        try:
            self._transcriber.load_model(model_name, on_progress=lambda p: self._submit(self._on_model_progress, p))
        except Exception as exc:
            logger.warning(f"Model load failed: {exc}")
            self._submit(self._on_model_failed, exc)
            return
        self._submit(self._on_model_loaded)


def _remove_temp_file(audio: Optional[CapturedAudio]) -> None:
    if audio is None or audio.path is None:
        return
    try:
        Path(audio.path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning(f"Could not delete temp audio {audio.path}: {exc}")
