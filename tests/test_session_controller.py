from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Optional

import pytest

from correction_store import CorrectionStore
from errors import (
    ERROR_MESSAGES,
    MODEL_LOADING,
    NO_SPEECH,
    TRANSCRIPTION_FAILED,
    EmptyResultError,
    LowConfidenceError,
    ModelLoadError,
    TranscriptionError,
)
from models import (
    CapturedAudio,
    HotkeyBindings,
    InsertMethod,
    InsertResult,
    RecordingPhase,
    RecordingState,
    Transcription,
    TriggerSignal,
)
from session_controller import PipelineController


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRecorder:
    def __init__(self, tmp_path: Path, amplitudes: tuple[float, ...] = ()) -> None:
        self.tmp_path = tmp_path
        self.amplitudes = amplitudes
        self.started = 0
        self.stopped = 0
        self.files: list[Path] = []
        self.start_error: Optional[Exception] = None

    def start(self, on_amplitude=None) -> None:  # noqa: ANN001
        self.started += 1
        if self.start_error is not None:
            raise self.start_error
        for value in self.amplitudes:
            if on_amplitude is not None:
                on_amplitude(value)

    def stop(self) -> Optional[CapturedAudio]:
        self.stopped += 1
        path = self.tmp_path / f"capture-{self.stopped}.wav"
        path.write_bytes(b"RIFF")
        self.files.append(path)
        return CapturedAudio(path=path, samples=[0.0] * 16000, duration_s=1.0)


class FakeTranscriber:
    def __init__(self, result: Transcription | Exception | None = None, loaded: bool = True) -> None:
        self.result = result or Transcription("hello", "en", 0.9)
        self.loaded = loaded
        self.prompts: list[Optional[str]] = []
        self.load_error: Optional[Exception] = None

    @property
    def is_model_loaded(self) -> bool:
        return self.loaded

    def load_model(self, model_name=None, on_progress=None) -> None:  # noqa: ANN001
        if on_progress is not None:
            on_progress(0.0)
            on_progress(0.5)
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True
        if on_progress is not None:
            on_progress(1.0)

    def transcribe(self, samples, prompt_bias=None) -> Transcription:  # noqa: ANN001
        self.prompts.append(prompt_bias)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class GatedTranscriber(FakeTranscriber):
    """Model load blocks until ``gate`` is set."""

    def __init__(self, loaded: bool = True) -> None:
        super().__init__(loaded=loaded)
        self.gate = threading.Event()

    def load_model(self, model_name=None, on_progress=None) -> None:  # noqa: ANN001
        self.gate.wait(2.0)
        super().load_model(model_name, on_progress)


class FakeDetector:
    def detect(self, text: str, hint: Optional[str] = None) -> tuple[str, str]:
        return hint or "en", "English"


class FakeGrammar:
    def __init__(self, fn: Callable[[str], str] = lambda s: s) -> None:
        self.fn = fn

    def correct(self, text: str, language: str) -> str:
        return self.fn(text)


class FakeInserter:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def insert(self, text: str) -> InsertResult:
        self.calls.append(text)
        return InsertResult(success=True, method=InsertMethod.ACCESSIBILITY)


def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> CorrectionStore:
    return CorrectionStore(tmp_path / "corrections.json")


def _controller(
    tmp_path: Path,
    clock: FakeClock,
    store: CorrectionStore,
    transcriber: Optional[FakeTranscriber] = None,
    **kwargs,
) -> tuple[PipelineController, dict]:
    parts = {
        "recorder": kwargs.pop("recorder", None) or FakeRecorder(tmp_path),
        "transcriber": transcriber or FakeTranscriber(),
        "grammar": kwargs.pop("grammar", None) or FakeGrammar(),
        "inserter": FakeInserter(),
        "transitions": [],
    }
    kwargs.setdefault("confirmation_s", 0.05)
    kwargs.setdefault("error_clear_s", 0.05)
    controller = PipelineController(
        recorder=parts["recorder"],
        transcriber=parts["transcriber"],
        language_detector=FakeDetector(),
        grammar=parts["grammar"],
        corrections=store,
        inserter=parts["inserter"],
        clock=clock,
        on_state_change=lambda f, t: parts["transitions"].append((f.phase, t.phase)),
        **kwargs,
    )
    controller.start()
    return controller, parts


def _record(controller: PipelineController, clock: FakeClock, seconds: float = 1.0) -> None:
    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.flush()
    clock.advance(seconds)
    controller.post_signal(TriggerSignal.CAPTURE_STOP)


def test_dictation_end_to_end(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    store.add("helo", "hello", "en")
    controller, parts = _controller(
        tmp_path,
        clock,
        store,
        transcriber=FakeTranscriber(Transcription("helo wrld", "en", 0.9)),
        grammar=FakeGrammar(lambda s: "Helo wrld."),
    )

    _record(controller, clock, 1.2)

    assert _wait_for(lambda: parts["transitions"][-1:] == [(RecordingPhase.SHOWING_CONFIRMATION, RecordingPhase.IDLE)])
    assert parts["inserter"].calls == ["Hello wrld."]
    assert parts["transitions"] == [
        (RecordingPhase.IDLE, RecordingPhase.RECORDING),
        (RecordingPhase.RECORDING, RecordingPhase.TRANSCRIBING),
        (RecordingPhase.TRANSCRIBING, RecordingPhase.INSERTING),
        (RecordingPhase.INSERTING, RecordingPhase.SHOWING_CONFIRMATION),
        (RecordingPhase.SHOWING_CONFIRMATION, RecordingPhase.IDLE),
    ]
    result = controller.last_result
    assert result is not None
    assert result.raw_text == "helo wrld"
    assert result.corrected_text == "Hello wrld."
    assert result.words == ("Hello", "wrld.")
    assert result.duration_s == pytest.approx(1.2)
    assert result.was_fallback is False
    assert parts["transcriber"].prompts == ["Vocabulary: hello"]
    assert not parts["recorder"].files[0].exists()
    controller.shutdown()


def test_confirmation_state_carries_inserted_text(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(tmp_path, clock, store, confirmation_s=5.0)

    _record(controller, clock)

    assert _wait_for(lambda: controller.state.phase == RecordingPhase.SHOWING_CONFIRMATION)
    assert controller.state == RecordingState.showing_confirmation("hello")
    controller.shutdown()


def test_short_capture_is_discarded(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(tmp_path, clock, store)

    _record(controller, clock, 0.3)

    assert _wait_for(lambda: parts["recorder"].stopped == 1)
    controller.flush()
    assert controller.state.is_idle
    assert parts["transitions"] == [
        (RecordingPhase.IDLE, RecordingPhase.RECORDING),
        (RecordingPhase.RECORDING, RecordingPhase.IDLE),
    ]
    assert parts["transcriber"].prompts == []
    assert _wait_for(lambda: not parts["recorder"].files[0].exists())
    controller.shutdown()


def test_start_while_busy_is_ignored(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(tmp_path, clock, store)

    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.toggle_recording()  # stops the first capture
    controller.flush()

    assert _wait_for(lambda: parts["recorder"].stopped == 1)
    assert parts["recorder"].started == 1
    controller.shutdown()


def test_stop_without_recording_is_ignored(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(tmp_path, clock, store)

    controller.post_signal(TriggerSignal.CAPTURE_STOP)
    controller.flush()

    assert controller.state.is_idle
    assert parts["transitions"] == []
    controller.shutdown()


def test_start_before_model_ready_shows_loading_error(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(tmp_path, clock, store, transcriber=FakeTranscriber(loaded=False))

    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.flush()

    assert parts["transitions"][0] == (RecordingPhase.IDLE, RecordingPhase.ERROR)
    assert parts["recorder"].started == 0
    assert _wait_for(lambda: controller.state.is_idle)
    assert ERROR_MESSAGES[MODEL_LOADING] == "Model still loading, please wait..."
    controller.shutdown()


def test_error_state_message(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    messages: list[str] = []
    controller, parts = _controller(
        tmp_path, clock, store, transcriber=FakeTranscriber(EmptyResultError()), error_clear_s=5.0
    )
    controller.subscribe(lambda f, t: messages.append(t.message) if t.phase == RecordingPhase.ERROR else None)

    _record(controller, clock)

    assert _wait_for(lambda: controller.state.phase == RecordingPhase.ERROR)
    assert messages == [ERROR_MESSAGES[NO_SPEECH]]
    assert parts["inserter"].calls == []
    controller.shutdown()


def test_hard_failure_clears_and_deletes_temp_file(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(
        tmp_path, clock, store, transcriber=FakeTranscriber(TranscriptionError("decoder crashed"))
    )

    _record(controller, clock)

    assert _wait_for(lambda: (RecordingPhase.ERROR, RecordingPhase.IDLE) in parts["transitions"])
    assert _wait_for(lambda: not parts["recorder"].files[0].exists())
    assert controller.last_result is None
    controller.shutdown()


def test_unexpected_exception_uses_generic_message(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(
        tmp_path, clock, store, grammar=FakeGrammar(lambda s: 1 / 0), error_clear_s=5.0
    )

    _record(controller, clock)

    assert _wait_for(lambda: controller.state.phase == RecordingPhase.ERROR)
    assert controller.state.message == ERROR_MESSAGES[TRANSCRIPTION_FAILED]
    controller.shutdown()


def test_low_confidence_result_is_still_inserted(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(
        tmp_path, clock, store, transcriber=FakeTranscriber(LowConfidenceError("mumble", "en"))
    )

    _record(controller, clock)

    assert _wait_for(lambda: parts["inserter"].calls == ["mumble"])
    assert _wait_for(lambda: controller.last_result is not None)
    assert controller.last_result.confidence == pytest.approx(0.4)
    controller.shutdown()


def test_cloud_fallback_on_local_failure(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    cloud = FakeTranscriber(Transcription("from the cloud", "en", 1.0))
    controller, parts = _controller(
        tmp_path,
        clock,
        store,
        transcriber=FakeTranscriber(TranscriptionError("local failed")),
        fallback_transcriber=cloud,
    )

    _record(controller, clock)

    assert _wait_for(lambda: parts["inserter"].calls == ["from the cloud"])
    assert _wait_for(lambda: controller.last_result is not None)
    assert controller.last_result.was_fallback is True
    assert controller.last_result.confidence == 1.0
    controller.shutdown()


def test_history_is_newest_first_and_capped(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    transcriber = FakeTranscriber()
    controller, parts = _controller(tmp_path, clock, store, transcriber=transcriber, history_size=3)

    for i in range(4):
        transcriber.result = Transcription(f"take {i}", "en", 0.9)
        _record(controller, clock)
        assert _wait_for(lambda: len(parts["inserter"].calls) == i + 1)
        assert _wait_for(lambda: controller.state.is_idle)

    assert [r.raw_text for r in controller.history] == ["take 3", "take 2", "take 1"]
    assert controller.last_result.raw_text == "take 3"
    controller.shutdown()


def test_max_duration_stops_recording(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(
        tmp_path, clock, store, max_recording_s=0.05, min_recording_s=0.0, confirmation_s=5.0
    )

    controller.post_signal(TriggerSignal.CAPTURE_START)

    assert _wait_for(lambda: parts["inserter"].calls == ["hello"])
    assert (RecordingPhase.RECORDING, RecordingPhase.TRANSCRIBING) in parts["transitions"]
    controller.shutdown()


def test_stale_timer_does_not_interrupt_next_cycle(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(tmp_path, clock, store, max_recording_s=0.2, confirmation_s=5.0)

    # First cycle is discarded before its max-duration timer fires.
    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.post_signal(TriggerSignal.CAPTURE_STOP)
    controller.flush()
    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.flush()
    clock.advance(1.0)
    time.sleep(0.1)

    assert controller.state.phase == RecordingPhase.RECORDING
    controller.shutdown()


def test_amplitude_buffer_is_capped(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    levels: list[float] = []
    recorder = FakeRecorder(tmp_path, amplitudes=tuple(i / 10 for i in range(10)))
    controller, parts = _controller(
        tmp_path, clock, store, recorder=recorder, amplitude_capacity=4, on_amplitude=levels.append
    )

    controller.post_signal(TriggerSignal.CAPTURE_START)

    assert _wait_for(lambda: len(levels) == 10)
    assert controller.amplitudes == pytest.approx([0.6, 0.7, 0.8, 0.9])
    controller.shutdown()


def test_recorder_start_failure_goes_to_error(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    recorder = FakeRecorder(tmp_path)
    recorder.start_error = RuntimeError("no input device")
    controller, parts = _controller(tmp_path, clock, store, recorder=recorder)

    controller.post_signal(TriggerSignal.CAPTURE_START)

    assert _wait_for(lambda: (RecordingPhase.RECORDING, RecordingPhase.ERROR) in parts["transitions"])
    assert _wait_for(lambda: controller.state.is_idle)
    controller.shutdown()


def test_correction_panel_requires_a_result(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(tmp_path, clock, store)

    controller.post_signal(TriggerSignal.OPEN_CORRECTION)
    controller.flush()

    assert controller.state.is_idle
    controller.shutdown()


def test_submit_correction_learns_and_returns_to_idle(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(
        tmp_path, clock, store, transcriber=FakeTranscriber(Transcription("teh cat", "en", 0.9))
    )
    _record(controller, clock)
    assert _wait_for(lambda: controller.state.is_idle and controller.last_result is not None)

    controller.post_signal(TriggerSignal.OPEN_CORRECTION)
    controller.flush()
    assert controller.state == RecordingState.showing_correction()

    controller.submit_correction("teh", "the")
    controller.flush()

    assert controller.state.is_idle
    assert _wait_for(lambda: len(controller.corrections()) == 1)
    entry = controller.corrections()[0]
    assert (entry.wrong_text, entry.correct_text, entry.language) == ("teh", "the", "en")
    controller.shutdown()


def test_dismiss_correction(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    controller, parts = _controller(tmp_path, clock, store)
    _record(controller, clock)
    assert _wait_for(lambda: controller.state.is_idle and controller.last_result is not None)

    controller.post_signal(TriggerSignal.OPEN_CORRECTION)
    controller.dismiss_correction()
    controller.flush()

    assert controller.state.is_idle
    assert controller.corrections() == []
    controller.shutdown()


def test_load_model_reports_progress(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    progress: list[float] = []
    transcriber = FakeTranscriber(loaded=False)
    controller, parts = _controller(tmp_path, clock, store, transcriber=transcriber)
    controller.subscribe(
        lambda f, t: progress.append(t.progress) if t.phase == RecordingPhase.DOWNLOADING_MODEL else None
    )

    controller.load_model("tiny")

    assert _wait_for(lambda: controller.model_ready and controller.state.is_idle)
    assert progress == [0.0, 0.5, 1.0]
    controller.shutdown()


def test_failed_model_load_shows_error(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    transcriber = FakeTranscriber(loaded=False)
    transcriber.load_error = ModelLoadError("download failed")
    controller, parts = _controller(tmp_path, clock, store, transcriber=transcriber)

    controller.load_model()

    assert _wait_for(lambda: (RecordingPhase.DOWNLOADING_MODEL, RecordingPhase.ERROR) in parts["transitions"])
    assert _wait_for(lambda: controller.state.is_idle)
    assert controller.model_ready is False
    controller.shutdown()


def test_model_load_waits_for_correction_submit(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(tmp_path, clock, store)
    _record(controller, clock)
    assert _wait_for(lambda: controller.state.is_idle and controller.last_result is not None)

    controller.post_signal(TriggerSignal.OPEN_CORRECTION)
    controller.load_model("small")
    controller.flush()
    assert controller.state == RecordingState.showing_correction()

    controller.submit_correction("hello", "Hullo")

    loaded = (RecordingPhase.DOWNLOADING_MODEL, RecordingPhase.IDLE)
    assert _wait_for(lambda: loaded in parts["transitions"] and controller.state.is_idle)
    closed = parts["transitions"].index((RecordingPhase.SHOWING_CORRECTION, RecordingPhase.IDLE))
    started = parts["transitions"].index((RecordingPhase.IDLE, RecordingPhase.DOWNLOADING_MODEL))
    assert closed < started
    assert controller.model_ready is True
    saved = CorrectionStore(tmp_path / "corrections.json").all()
    assert [(e.wrong_text, e.correct_text) for e in saved] == [("hello", "Hullo")]
    controller.shutdown()


def test_model_load_runs_after_correction_dismissed(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    controller, parts = _controller(tmp_path, clock, store)
    _record(controller, clock)
    assert _wait_for(lambda: controller.state.is_idle and controller.last_result is not None)

    controller.post_signal(TriggerSignal.OPEN_CORRECTION)
    controller.load_model("small")
    controller.dismiss_correction()

    loaded = (RecordingPhase.DOWNLOADING_MODEL, RecordingPhase.IDLE)
    assert _wait_for(lambda: loaded in parts["transitions"] and controller.state.is_idle)
    assert controller.corrections() == []
    controller.shutdown()


def test_error_timer_does_not_clear_a_later_model_load(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    transcriber = GatedTranscriber(loaded=False)
    controller, parts = _controller(tmp_path, clock, store, transcriber=transcriber, error_clear_s=0.2)

    controller.post_signal(TriggerSignal.CAPTURE_START)
    controller.flush()
    assert controller.state.phase == RecordingPhase.ERROR

    controller.load_model("tiny")
    controller.flush()
    time.sleep(0.4)
    controller.flush()

    assert controller.state.phase == RecordingPhase.DOWNLOADING_MODEL
    transcriber.gate.set()
    assert _wait_for(lambda: controller.model_ready and controller.state.is_idle)
    controller.shutdown()


def test_confirmation_timer_does_not_clear_a_later_model_load(
    tmp_path: Path, clock: FakeClock, store: CorrectionStore
) -> None:
    transcriber = GatedTranscriber()
    controller, parts = _controller(tmp_path, clock, store, transcriber=transcriber, confirmation_s=0.2)

    _record(controller, clock)
    assert _wait_for(lambda: controller.state.phase == RecordingPhase.SHOWING_CONFIRMATION)

    controller.load_model("tiny")
    controller.flush()
    time.sleep(0.4)
    controller.flush()

    assert controller.state.phase == RecordingPhase.DOWNLOADING_MODEL
    assert (RecordingPhase.SHOWING_CONFIRMATION, RecordingPhase.IDLE) not in parts["transitions"]
    transcriber.gate.set()
    assert _wait_for(lambda: controller.model_ready and controller.state.is_idle)
    controller.shutdown()


def test_rebind_hotkeys_requires_engine(tmp_path: Path, clock: FakeClock, store: CorrectionStore) -> None:
    class Engine:
        bindings: Optional[HotkeyBindings] = None

        def reconfigure(self, bindings: HotkeyBindings) -> None:
            self.bindings = bindings

    controller, parts = _controller(tmp_path, clock, store)
    with pytest.raises(RuntimeError):
        controller.rebind_hotkeys(HotkeyBindings())

    engine = Engine()
    controller.attach_trigger_engine(engine)
    controller.rebind_hotkeys(HotkeyBindings(trigger_key="cmd_r"))

    assert engine.bindings.trigger_key == "cmd_r"
    controller.shutdown()
