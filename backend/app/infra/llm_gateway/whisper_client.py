"""On-host speech-to-text for voice notes via faster-whisper.

Selected with ``transcription.provider: whisper``. Model settings live in
``transcription.whisper``; ``MACROLOG_WHISPER_ENABLED`` overrides the
``enabled`` flag so a deployment can switch the backend off without a new
profile. The model is loaded lazily and reused until its settings change.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from backend.app.config import DEFAULT_WHISPER_CONFIG, load_settings

if TYPE_CHECKING:  # pragma: no cover
    from faster_whisper import WhisperModel


logger = logging.getLogger(__name__)

ENABLED_ENV = "MACROLOG_WHISPER_ENABLED"
_TRUTHY = {"1", "true", "yes", "on"}
# Settings forwarded to ``WhisperModel.transcribe`` when present.
_DECODE_KEYS = (
    "task",
    "language",
    "beam_size",
    "best_of",
    "temperature",
    "initial_prompt",
    "condition_on_previous_text",
    "no_speech_threshold",
)

_MODEL_LOCK = threading.Lock()
_MODEL_CACHE: Optional["WhisperModel"] = None
_MODEL_CONFIG: Dict[str, str] = {}
_WHISPER_SETTINGS_CACHE: Optional[Dict[str, Any]] = None


@dataclass
class WhisperSegment:
    start: float
    end: float
    text: str
    tokens: List[int]


@dataclass
class WhisperResult:
    """Transcript plus the detection metadata faster-whisper reports."""

    text: str
    segments: List[WhisperSegment]
    language: Optional[str]
    language_probability: Optional[float]
    duration: Optional[float]
    model_id: str


def is_available() -> bool:
    flag = (os.getenv(ENABLED_ENV) or "").strip().lower()
    if flag:
        return flag in _TRUTHY
    return bool(_whisper_settings().get("enabled"))


def transcribe_file(audio_path: str, *, language: Optional[str] = None) -> WhisperResult:
    """Transcribe a clip on disk; ``language`` wins over the configured one.

    Raises ``RuntimeError`` when the backend is disabled, ``FileNotFoundError``
    for a missing clip and ``ValueError`` when the path is not a regular file.
    """

    if not is_available():
        raise RuntimeError("whisper transcription is disabled")

    source = Path(audio_path)
    if not source.exists():
        raise FileNotFoundError(audio_path)
    if not source.is_file():
        raise ValueError(f"audio source is not a file: {audio_path}")

    model = _get_model()
    options = _decode_options()
    if language:
        options["language"] = language
    raw_segments, info = model.transcribe(str(source), **options)
    segments = _collect_segments(raw_segments)
    result = WhisperResult(
        text=" ".join(segment.text for segment in segments if segment.text),
        segments=segments,
        language=getattr(info, "language", None),
        language_probability=getattr(info, "language_probability", None),
        duration=getattr(info, "duration", None),
        model_id=_MODEL_CONFIG.get("model_id", DEFAULT_WHISPER_CONFIG["model_id"]),
    )
    logger.debug(
        "whisper_transcription_finished",
        extra={
            "model": result.model_id,
            "language": result.language,
            "segments": len(segments),
            "duration": result.duration,
        },
    )
    return result


def _collect_segments(raw_segments: Iterable[Any]) -> List[WhisperSegment]:
    return [
        WhisperSegment(
            start=float(segment.start),
            end=float(segment.end),
            text=segment.text.strip(),
            tokens=list(getattr(segment, "tokens", None) or []),
        )
        for segment in raw_segments
    ]


def _get_model() -> "WhisperModel":
    global _MODEL_CACHE, _MODEL_CONFIG

    settings = _whisper_settings()
    wanted = {
        key: str(settings.get(key) or DEFAULT_WHISPER_CONFIG[key])
        for key in ("model_id", "device", "compute_type")
    }
    with _MODEL_LOCK:
        if _MODEL_CACHE is None or _MODEL_CONFIG != wanted:
            try:
                from faster_whisper import WhisperModel
            except ImportError as exc:  # pragma: no cover
                raise RuntimeError(
                    "faster-whisper is not installed; install the 'whisper' extra"
                ) from exc
            _MODEL_CACHE = WhisperModel(
                wanted["model_id"],
                device=wanted["device"],
                compute_type=wanted["compute_type"],
            )
            _MODEL_CONFIG = wanted
            logger.info("whisper_model_loaded", extra=dict(wanted))
        return _MODEL_CACHE


def _decode_options() -> Dict[str, object]:
    settings = _whisper_settings()
    options: Dict[str, object] = {
        key: settings[key] for key in _DECODE_KEYS if settings.get(key) is not None
    }
    if settings.get("vad_enabled"):
        options["vad_filter"] = True
        options["vad_parameters"] = {
            name: settings[key]
            for name, key in (
                ("threshold", "vad_threshold"),
                ("min_speech_duration_ms", "vad_min_speech"),
                ("max_silence_duration_ms", "vad_max_silence"),
            )
            if settings.get(key) is not None
        }
    return options


def _whisper_settings() -> Dict[str, Any]:
    global _WHISPER_SETTINGS_CACHE
    if _WHISPER_SETTINGS_CACHE is None:
        try:
            configured = load_settings().transcription.whisper
        except RuntimeError:
            logger.warning("whisper_settings_unreadable", exc_info=True)
            configured = {}
        merged = dict(DEFAULT_WHISPER_CONFIG)
        merged.update({key: value for key, value in configured.items() if value is not None})
        _WHISPER_SETTINGS_CACHE = merged
    return _WHISPER_SETTINGS_CACHE
