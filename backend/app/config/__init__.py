"""Config package exporting loader helpers."""

from .loader import DEFAULT_WHISPER_CONFIG, Settings, load_settings

__all__ = ["Settings", "load_settings", "DEFAULT_WHISPER_CONFIG"]
