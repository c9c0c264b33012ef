"""LLM gateway entry points for audio transcription."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import openai

from ...config import load_settings
from . import whisper_client

logger = logging.getLogger(__name__)

__all__ = [
    "TranscriptionGatewayError",
    "transcribe_audio",
    "translate_openai_error",
]

class TranscriptionGatewayError(RuntimeError):
    """Raised when speech-to-text cannot complete."""

    def __init__(self, message: str, *, code: str, retryable: bool):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


def transcribe_audio(
    data: bytes,
    *,
    filename: str,
    media_type: Optional[str] = None,
    language_hint: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    client: Optional[Any] = None,
) -> Dict[str, object]:
    """Transcribe an in-memory audio clip with the configured provider.

    ``provider`` and ``model`` default to the ``transcription`` settings
    section. ``client`` may carry a pre-built ``openai.OpenAI`` instance.
    """

    if not data:
        raise TranscriptionGatewayError(
            "audio payload is empty", code="media_unreadable", retryable=False
        )

    if provider is None or model is None:
        config = load_settings().transcription
        provider = provider or config.provider
        model = model or config.model
        api_key = api_key or config.api_key

    logger.debug(
        "transcription_request_prepared",
        extra={"provider": provider, "model": model, "bytes": len(data)},
    )

    if provider == "openai":
        return _transcribe_openai(
            data,
            filename=filename,
            media_type=media_type,
            language_hint=language_hint,
            model=model,
            client=client,
            api_key=api_key,
        )
    if provider == "whisper":
        return _transcribe_whisper(data, filename=filename, language_hint=language_hint)
    if provider != "stub":
        logger.warning(
            "transcription_provider_unimplemented", extra={"provider": provider}
        )
    return _stub_transcription(filename, language_hint=language_hint, model=model)


def translate_openai_error(exc: Exception, *, error_cls=TranscriptionGatewayError):
    """Map an ``openai`` SDK exception onto a gateway error with code/retryable."""

    if isinstance(exc, openai.APITimeoutError):
        return error_cls(str(exc), code="llm_timeout", retryable=True)
    if isinstance(exc, openai.RateLimitError):
        return error_cls(str(exc), code="llm_rate_limited", retryable=True)
    if isinstance(exc, openai.APIConnectionError):
        return error_cls(str(exc), code="llm_unavailable", retryable=True)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return error_cls(str(exc), code="llm_auth_failed", retryable=False)
    if isinstance(exc, openai.BadRequestError):
        return error_cls(str(exc), code="llm_bad_request", retryable=False)
    if isinstance(exc, openai.APIStatusError):
        retryable = exc.status_code >= 500
        return error_cls(str(exc), code="llm_upstream_error", retryable=retryable)
    return error_cls(str(exc), code="internal_error", retryable=False)


def _transcribe_openai(
    data: bytes,
    *,
    filename: str,
    media_type: Optional[str],
    language_hint: Optional[str],
    model: str,
    client: Optional[Any],
    api_key: Optional[str],
) -> Dict[str, object]:
    client = client or openai.OpenAI(api_key=api_key)
    request: Dict[str, Any] = {
        "model": model,
        "file": (filename, data, media_type or "application/octet-stream"),
    }
    if language_hint:
        request["language"] = language_hint
    try:
        response = client.audio.transcriptions.create(**request)
    except openai.OpenAIError as exc:
        raise translate_openai_error(exc) from exc

    text = (getattr(response, "text", None) or "").strip()
    logger.info(
        "transcription_completed",
        extra={"provider": "openai", "model": model, "chars": len(text)},
    )
    return {
        "text": text,
        "segments": [],
        "language": language_hint or "und",
        "confidence": None,
        "model": model,
        "duration_ms": 0,
    }


def _transcribe_whisper(
    data: bytes, *, filename: str, language_hint: Optional[str]
) -> Dict[str, object]:
    if not whisper_client.is_available():
        raise TranscriptionGatewayError(
            "Whisper transcription is disabled",
            code="transcription_disabled",
            retryable=False,
        )

    suffix = Path(filename).suffix or ".m4a"
    handle = tempfile.NamedTemporaryFile(suffix=suffix, delete=False)
    try:
        with handle:
            handle.write(data)
        result = whisper_client.transcribe_file(handle.name, language=language_hint)
    except FileNotFoundError as exc:
        raise TranscriptionGatewayError(
            str(exc), code="media_unreadable", retryable=False
        ) from exc
    except PermissionError as exc:
        raise TranscriptionGatewayError(
            str(exc), code="media_unreadable", retryable=False
        ) from exc
    except ValueError as exc:
        raise TranscriptionGatewayError(
            str(exc), code="unsupported_format", retryable=False
        ) from exc
    except TimeoutError as exc:  # pragma: no cover
        raise TranscriptionGatewayError(
            str(exc), code="llm_timeout", retryable=True
        ) from exc
    except RuntimeError as exc:
        raise TranscriptionGatewayError(
            str(exc), code="internal_error", retryable=False
        ) from exc
    finally:
        try:
            os.unlink(handle.name)
        except FileNotFoundError:
            pass

    return {
        "text": result.text,
        "segments": [_segment_to_dict(segment) for segment in result.segments],
        "language": result.language or language_hint or "und",
        "confidence": result.language_probability,
        "model": result.model_id,
        "duration_ms": _duration_ms(result),
    }


def _stub_transcription(
    filename: str, *, language_hint: Optional[str], model: str
) -> Dict[str, object]:
    inferred_text = Path(filename).stem.replace("_", " ").strip() or "sample audio"
    logger.info("transcription_stub_used", extra={"model": model})
    return {
        "text": inferred_text,
        "segments": [],
        "language": language_hint or "und",
        "confidence": 0.5,
        "model": f"stub::{model}",
        "duration_ms": 0,
    }


def _segment_to_dict(segment: whisper_client.WhisperSegment) -> Dict[str, object]:
    return {
        "start": segment.start,
        "end": segment.end,
        "text": segment.text,
        "tokens": segment.tokens,
    }


def _duration_ms(result: whisper_client.WhisperResult) -> int:
    if result.duration is not None:
        return int(result.duration * 1000)
    if result.segments:
        return int(result.segments[-1].end * 1000)
    return 0
