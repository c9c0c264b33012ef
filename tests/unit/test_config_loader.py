"""Tests for the YAML config loader."""

from __future__ import annotations

import pytest

from backend.app.config import load_settings

pytestmark = [pytest.mark.config]


@pytest.fixture(autouse=True)
def clear_secret_env(monkeypatch):
    for name in (
        "DATABASE_URL",
        "MACROLOG_WEBHOOK_SECRET",
        "OPENAI_API_KEY",
        "MACROLOG_STORAGE_SERVICE_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_settings_falls_back_to_defaults(monkeypatch, tmp_path):
    """Missing profiles should default to the built-in dev configuration."""

    monkeypatch.setenv("MACROLOG_CONFIG_PROFILE", "missing")
    monkeypatch.setenv("MACROLOG_CONFIG_DIR", str(tmp_path))
    settings = load_settings()

    assert settings.environment == "dev"
    assert settings.database_url.endswith("macrolog")
    assert settings.uploads.image.max_bytes == 6 * 1024 * 1024
    assert settings.uploads.audio.max_bytes == 25 * 1024 * 1024
    assert "image/heic" in settings.uploads.image.media_types
    assert settings.storage.signed_url_ttl_seconds == 600
    assert settings.inference.relaxed_retry is True
    assert settings.sweeper.stale_after_seconds == 900
    assert settings.poller.initial_interval_seconds == 0.6
    assert settings.poller.backoff_multiplier == 1.5
    assert settings.poller.max_consecutive_failures == 3
    assert settings.webhook_verification_enabled is False
    assert settings.transcription.whisper["enabled"] is False


def test_load_settings_reads_yaml_profile(monkeypatch, tmp_path):
    """Config loader should parse YAML profiles and expose typed sections."""

    profiles_dir = tmp_path / "profiles"
    profiles_dir.mkdir()
    (profiles_dir / "staging.yaml").write_text(
        """
environment: staging

database:
  url: "postgresql+psycopg://postgres:pw@db:5432/custom"

uploads:
  image:
    max_bytes: 1024
    media_types: [IMAGE/JPEG]

storage:
  backend: supabase
  base_url: https://project.supabase.co
  image_bucket: photos

inference:
  provider: openai
  model: gpt-5-mini
  relaxed_retry: false
  webhook_secret: whsec_profile

transcription:
  provider: whisper
  whisper:
    enabled: true
    model_id: medium

auth:
  provider: http
  base_url: https://project.supabase.co

sweeper:
  stale_after_seconds: 60

poller:
  deadline_seconds: 30
""",
        encoding="utf-8",
    )

    settings = load_settings(profile="staging", config_dir=profiles_dir)

    assert settings.environment == "staging"
    assert settings.database_url.endswith("custom")
    assert settings.uploads.image.max_bytes == 1024
    assert settings.uploads.image.media_types == ["image/jpeg"]
    assert settings.uploads.audio.max_bytes == 25 * 1024 * 1024
    assert settings.storage.backend == "supabase"
    assert settings.storage.image_bucket == "photos"
    assert settings.storage.audio_bucket == "entry-audio"
    assert settings.inference.provider == "openai"
    assert settings.inference.model == "gpt-5-mini"
    assert settings.inference.relaxed_retry is False
    assert settings.webhook_verification_enabled is True
    assert settings.transcription.provider == "whisper"
    assert settings.transcription.whisper["enabled"] is True
    assert settings.transcription.whisper["model_id"] == "medium"
    assert settings.transcription.whisper["compute_type"] == "int8"
    assert settings.auth.provider == "http"
    assert settings.sweeper.stale_after_seconds == 60
    assert settings.poller.deadline_seconds == 30.0
    assert settings.poller.max_interval_seconds == 5.0


def test_environment_overrides_profile_secrets(monkeypatch, tmp_path):
    (tmp_path / "dev.yaml").write_text(
        "inference:\n  webhook_secret: from-profile\n", encoding="utf-8"
    )
    monkeypatch.setenv("MACROLOG_WEBHOOK_SECRET", "from-env")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")

    settings = load_settings(profile="dev", config_dir=tmp_path)

    assert settings.inference.webhook_secret == "from-env"
    assert settings.database_url == "sqlite:///override.db"


def test_invalid_yaml_raises_runtime_error(tmp_path):
    (tmp_path / "broken.yaml").write_text("inference: [unclosed", encoding="utf-8")

    with pytest.raises(RuntimeError):
        load_settings(profile="broken", config_dir=tmp_path)
