"""Shared API dependencies."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request

from ..config import Settings, load_settings
from ..domain.completion.writer import CompletionWriter
from ..domain.entrystore.gateway import (
    EntryStoreGateway,
    build_entry_store_gateway,
)
from ..domain.intake.dispatch import InferenceDispatcher
from ..domain.intake.service import IntakeHandler
from ..domain.intake.transcription import LlmGatewayTranscriber, Transcriber
from ..domain.intake.uploads import UploadPolicy
from ..domain.webhook.receiver import WebhookReceiver
from ..infra.credentials import CredentialProvider, build_credential_provider
from ..infra.llm_gateway.inference_client import (
    InferenceProvider,
    build_inference_provider,
)
from ..infra.object_store import ObjectStore, build_object_store

__all__ = [
    "get_bearer_token",
    "get_credential_provider",
    "get_dispatcher",
    "get_entry_gateway",
    "get_inference_provider",
    "get_intake_handler",
    "get_object_store",
    "get_settings",
    "get_transcriber",
    "get_webhook_receiver",
]

BEARER_PREFIX = "bearer "


@lru_cache()
def _settings_singleton() -> Settings:
    return load_settings()


def get_settings() -> Settings:
    """Return the settings loaded once per process."""

    return _settings_singleton()


@lru_cache()
def _entry_gateway_singleton() -> EntryStoreGateway:
    return build_entry_store_gateway(fallback_to_memory=True)


def get_entry_gateway() -> EntryStoreGateway:
    """Return the process-wide entry store gateway instance."""

    return _entry_gateway_singleton()


@lru_cache()
def _object_store_singleton() -> ObjectStore:
    return build_object_store(get_settings().storage)


def get_object_store() -> ObjectStore:
    return _object_store_singleton()


@lru_cache()
def _credential_provider_singleton() -> CredentialProvider:
    return build_credential_provider(get_settings().auth)


def get_credential_provider() -> CredentialProvider:
    return _credential_provider_singleton()


@lru_cache()
def _inference_provider_singleton() -> InferenceProvider:
    return build_inference_provider(get_settings().inference)


def get_inference_provider() -> InferenceProvider:
    return _inference_provider_singleton()


def get_transcriber(settings: Settings = Depends(get_settings)) -> Transcriber:
    return LlmGatewayTranscriber(settings.transcription)


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract the bearer credential from the Authorization header."""

    header = (request.headers.get("authorization") or "").strip()
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    return header[len(BEARER_PREFIX):].strip() or None


def get_dispatcher(
    settings: Settings = Depends(get_settings),
    provider: InferenceProvider = Depends(get_inference_provider),
    entry_gateway: EntryStoreGateway = Depends(get_entry_gateway),
    object_store: ObjectStore = Depends(get_object_store),
) -> InferenceDispatcher:
    return InferenceDispatcher(
        provider=provider,
        entry_gateway=entry_gateway,
        object_store=object_store,
        inference_config=settings.inference,
        storage_config=settings.storage,
    )


def get_intake_handler(
    settings: Settings = Depends(get_settings),
    credentials: CredentialProvider = Depends(get_credential_provider),
    entry_gateway: EntryStoreGateway = Depends(get_entry_gateway),
    object_store: ObjectStore = Depends(get_object_store),
    transcriber: Transcriber = Depends(get_transcriber),
    dispatcher: InferenceDispatcher = Depends(get_dispatcher),
) -> IntakeHandler:
    return IntakeHandler(
        credentials=credentials,
        upload_policy=UploadPolicy(settings.uploads),
        entry_gateway=entry_gateway,
        object_store=object_store,
        transcriber=transcriber,
        dispatcher=dispatcher,
        storage_config=settings.storage,
    )


@lru_cache()
def _webhook_receiver_singleton() -> WebhookReceiver:
    settings = get_settings()
    entry_gateway = get_entry_gateway()
    provider = get_inference_provider()
    return WebhookReceiver(
        provider=provider,
        entry_gateway=entry_gateway,
        writer=CompletionWriter(entry_gateway),
        dispatcher=get_dispatcher(
            settings, provider, entry_gateway, get_object_store()
        ),
        secret=settings.inference.webhook_secret,
        relaxed_retry=settings.inference.relaxed_retry,
    )


def get_webhook_receiver() -> WebhookReceiver:
    """Return the process-wide receiver; built once, like its collaborators."""

    return _webhook_receiver_singleton()
