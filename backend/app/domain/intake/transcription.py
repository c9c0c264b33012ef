"""Speech-to-text seam used by the intake handler."""

from __future__ import annotations

from typing import Optional, Protocol

from ...config.loader import TranscriptionConfig
from ...infra import llm_gateway
from .uploads import UploadedMedia

__all__ = ["LlmGatewayTranscriber", "Transcriber"]


class Transcriber(Protocol):  # pragma: no cover
    def transcribe(self, media: UploadedMedia) -> str: ...


class LlmGatewayTranscriber:
    """Routes audio through ``llm_gateway.transcribe_audio``."""

    def __init__(self, config: TranscriptionConfig, *, client: Optional[object] = None) -> None:
        self._config = config
        self._client = client

    def transcribe(self, media: UploadedMedia) -> str:
        result = llm_gateway.transcribe_audio(
            media.data,
            filename=media.filename or f"voice.{media.extension}",
            media_type=media.media_type,
            language_hint=self._config.language_hint,
            provider=self._config.provider,
            model=self._config.model,
            api_key=self._config.api_key,
            client=self._client,
        )
        return str(result.get("text") or "").strip()
