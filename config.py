"""Simple JSON-based config store."""

from __future__ import annotations

import json
from pathlib import Path

# (name, max recording seconds); 0 means unlimited.
DURATION_PRESETS = (
    ("Quick dictation", 30),
    ("Standard", 120),
    ("Extended", 300),
    ("Unlimited", 0),
)

MODEL_PRESETS = ("tiny", "base", "small", "medium", "large-v3", "distil-large-v3")


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "cursor_dictate" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def data_dir(self) -> Path:
        return self._path.parent

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", "alt_r"))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_correction_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("correction_hotkey", "cmd+shift+c"))

    def set_correction_hotkey(self, combo: str) -> None:
        self._set("correction_hotkey", combo)

    def get_double_press_window(self) -> float:
        data = self._read_all()
        try:
            return float(data.get("double_press_window_s", 0.4))
        except (TypeError, ValueError):
            return 0.4

    def set_double_press_window(self, seconds: float) -> None:
        self._set("double_press_window_s", seconds)

    def get_max_recording_seconds(self) -> int:
        data = self._read_all()
        try:
            return max(int(data.get("max_recording_seconds", 120)), 0)
        except (TypeError, ValueError):
            return 120

    def set_max_recording_seconds(self, seconds: int) -> None:
        self._set("max_recording_seconds", int(seconds))

    def get_model(self) -> str:
        data = self._read_all()
        return str(data.get("model", "base"))

    def set_model(self, model: str) -> None:
        self._set("model", model)

    def _set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
