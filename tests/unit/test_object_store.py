"""Object store adapter tests."""

from __future__ import annotations

import json
from typing import List
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from backend.app.config.loader import StorageConfig
from backend.app.infra.object_store import (
    FilesystemObjectStore,
    InMemoryObjectStore,
    ObjectStoreError,
    SupabaseObjectStore,
    build_object_store,
)

pytestmark = [pytest.mark.infra]

PATH = "user/u1/entry/e1/image_1760000000000.jpg"


def test_memory_store_refuses_overwrite():
    store = InMemoryObjectStore()
    stored = store.put_object("entry-images", PATH, b"jpeg", content_type="image/jpeg")

    assert stored.size == 4
    with pytest.raises(ObjectStoreError) as exc_info:
        store.put_object("entry-images", PATH, b"other", content_type="image/jpeg")

    assert exc_info.value.code == "object_exists"
    assert store.objects[("entry-images", PATH)] == (b"jpeg", "image/jpeg")


def test_memory_store_signs_existing_objects_only():
    store = InMemoryObjectStore()
    store.put_object("entry-images", PATH, b"jpeg", content_type="image/jpeg")

    url = store.create_signed_url("entry-images", PATH, expires_in=600)

    assert url == f"memory://objects/entry-images/{PATH}?expires_in=600"
    with pytest.raises(ObjectStoreError) as exc_info:
        store.create_signed_url("entry-images", "user/u1/missing.jpg", expires_in=600)
    assert exc_info.value.code == "object_not_found"


@pytest.mark.parametrize("path", ["../escape.jpg", "/absolute.jpg", ""])
def test_invalid_paths_are_rejected(path):
    with pytest.raises(ObjectStoreError) as exc_info:
        InMemoryObjectStore().put_object("b", path, b"x", content_type="image/jpeg")

    assert exc_info.value.code == "invalid_path"


def test_filesystem_store_writes_and_signs(tmp_path):
    clock = lambda: 1_000.0  # noqa: E731
    store = FilesystemObjectStore(
        tmp_path, base_url="http://localhost:8000/storage", signing_secret="s3cret", clock=clock
    )

    store.put_object("entry-audio", "user/u1/entry/e1/audio_1.m4a", b"voice", content_type="audio/m4a")

    assert (tmp_path / "entry-audio" / "user/u1/entry/e1/audio_1.m4a").read_bytes() == b"voice"
    url = store.create_signed_url("entry-audio", "user/u1/entry/e1/audio_1.m4a", expires_in=60)
    parts = urlsplit(url)
    assert parts.path == "/storage/entry-audio/user/u1/entry/e1/audio_1.m4a"
    query = parse_qs(parts.query)
    assert query["expires"] == ["1060"]
    assert store.verify("entry-audio", "user/u1/entry/e1/audio_1.m4a", 1060, query["signature"][0])
    assert not store.verify("entry-audio", "user/u1/entry/e1/audio_1.m4a", 1060, "0" * 64)


def test_filesystem_signature_expires(tmp_path):
    now = [1_000.0]
    store = FilesystemObjectStore(tmp_path, base_url="http://x", clock=lambda: now[0])
    signature = store.sign("b", "p.jpg", 1_010)

    assert store.verify("b", "p.jpg", 1_010, signature)
    now[0] = 2_000.0
    assert not store.verify("b", "p.jpg", 1_010, signature)


def test_filesystem_store_refuses_overwrite(tmp_path):
    store = FilesystemObjectStore(tmp_path, base_url="http://x")
    store.put_object("b", "p.jpg", b"1", content_type="image/jpeg")

    with pytest.raises(ObjectStoreError) as exc_info:
        store.put_object("b", "p.jpg", b"2", content_type="image/jpeg")

    assert exc_info.value.code == "object_exists"
    assert (tmp_path / "b" / "p.jpg").read_bytes() == b"1"


def _supabase(handler) -> SupabaseObjectStore:
    return SupabaseObjectStore(
        "https://project.supabase.test",
        service_key="service-key",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_supabase_upload_and_relative_signed_url():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "/object/sign/" in request.url.path:
            return httpx.Response(200, json={"signedURL": f"/object/sign/entry-images/{PATH}?token=t"})
        return httpx.Response(200, json={"Key": f"entry-images/{PATH}"})

    store = _supabase(handler)
    store.put_object("entry-images", PATH, b"jpeg", content_type="image/jpeg")
    url = store.create_signed_url("entry-images", PATH, expires_in=600)

    assert url == f"https://project.supabase.test/storage/v1/object/sign/entry-images/{PATH}?token=t"
    upload, sign = seen
    assert upload.url.path == f"/storage/v1/object/entry-images/{PATH}"
    assert upload.headers["authorization"] == "Bearer service-key"
    assert upload.headers["x-upsert"] == "false"
    assert upload.headers["content-type"] == "image/jpeg"
    assert json.loads(sign.read()) == {"expiresIn": 600}


def test_supabase_conflict_maps_to_object_exists():
    store = _supabase(lambda request: httpx.Response(409, json={"error": "Duplicate"}))

    with pytest.raises(ObjectStoreError) as exc_info:
        store.put_object("entry-images", PATH, b"jpeg", content_type="image/jpeg")

    assert exc_info.value.code == "object_exists"


@pytest.mark.parametrize("status_code,retryable", [(500, True), (400, False)])
def test_supabase_http_errors(status_code, retryable):
    store = _supabase(lambda request: httpx.Response(status_code))

    with pytest.raises(ObjectStoreError) as exc_info:
        store.put_object("entry-images", PATH, b"jpeg", content_type="image/jpeg")

    assert exc_info.value.code == "storage_rejected"
    assert exc_info.value.retryable is retryable


def test_supabase_timeout_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(ObjectStoreError) as exc_info:
        _supabase(handler).create_signed_url("entry-images", PATH, expires_in=60)

    assert exc_info.value.code == "storage_timeout"
    assert exc_info.value.retryable is True


def test_build_object_store_selects_backend(tmp_path):
    assert isinstance(build_object_store(StorageConfig(backend="memory")), InMemoryObjectStore)
    assert isinstance(
        build_object_store(StorageConfig(root_path=str(tmp_path))), FilesystemObjectStore
    )
    with pytest.raises(ObjectStoreError) as exc_info:
        build_object_store(StorageConfig(backend="supabase"))
    assert exc_info.value.code == "storage_misconfigured"
