"""HMAC-SHA256 verification of provider webhook deliveries.

Signed content is ``b"{timestamp}." + raw_body``. Two header schemes are
accepted:

* ``webhook-signature`` (+ ``webhook-timestamp``): a whitespace separated
  list of ``v1,<sig>`` tokens or comma separated ``key=value`` pairs with
  keys ``v1``, ``sig``, ``s``, ``sha256`` and an optional ``t`` timestamp.
* legacy ``svix-id`` / ``svix-timestamp`` / ``svix-signature`` with
  ``v1,<base64>`` tokens.

Signatures may be hex or base64 encoded.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional

__all__ = [
    "SCHEME_DISABLED",
    "SCHEME_LEGACY",
    "SCHEME_STANDARD",
    "ParsedSignatureHeader",
    "WebhookSignatureError",
    "compute_signature",
    "decode_webhook_secret",
    "parse_signature_header",
    "verify_webhook_signature",
]

SECRET_PREFIX = "whsec_"
SIGNATURE_KEYS = ("v1", "sig", "s", "sha256")
SCHEME_STANDARD = "webhook-signature"
SCHEME_LEGACY = "svix"
SCHEME_DISABLED = "disabled"


class WebhookSignatureError(Exception):
    """The delivery is not authentic; answered with 401."""


@dataclass
class ParsedSignatureHeader:
    signatures: List[str] = field(default_factory=list)
    timestamp: Optional[str] = None


def decode_webhook_secret(secret: str) -> bytes:
    """Strip ``whsec_`` and base64-decode; fall back to the raw secret bytes."""

    candidate = secret.strip()
    if candidate.startswith(SECRET_PREFIX):
        candidate = candidate[len(SECRET_PREFIX):]
    try:
        decoded = base64.b64decode(candidate, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")
    return decoded or secret.encode("utf-8")


def parse_signature_header(value: Optional[str]) -> ParsedSignatureHeader:
    parsed = ParsedSignatureHeader()
    if not value:
        return parsed
    for token in value.split():
        if token.startswith("v1,"):
            signature = token[3:].strip()
            if signature:
                parsed.signatures.append(signature)
            continue
        for part in token.split(","):
            key, sep, item = part.partition("=")
            key = key.strip()
            item = item.strip()
            if not sep or not key or not item:
                continue
            if key == "t":
                parsed.timestamp = parsed.timestamp or item
            elif key in SIGNATURE_KEYS:
                parsed.signatures.append(item)
    return parsed


def compute_signature(secret_bytes: bytes, timestamp: str, raw_body: bytes) -> bytes:
    signed = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret_bytes, signed, hashlib.sha256).digest()


def verify_webhook_signature(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
) -> str:
    """Return the scheme that authenticated the delivery.

    Raises ``WebhookSignatureError`` on any mismatch or missing header. An
    unset ``secret`` disables verification and returns ``SCHEME_DISABLED``.
    """

    if not secret:
        return SCHEME_DISABLED

    lowered = {str(key).lower(): value for key, value in headers.items()}
    secret_bytes = decode_webhook_secret(secret)

    standard = lowered.get("webhook-signature")
    if standard:
        parsed = parse_signature_header(standard)
        timestamp = lowered.get("webhook-timestamp") or parsed.timestamp
        if timestamp and parsed.signatures:
            digest = compute_signature(secret_bytes, timestamp.strip(), raw_body)
            if _matches_any(parsed.signatures, digest, allow_hex=True):
                return SCHEME_STANDARD

    legacy_id = lowered.get("svix-id")
    legacy_ts = lowered.get("svix-timestamp")
    legacy_sig = lowered.get("svix-signature")
    if legacy_id and legacy_ts and legacy_sig:
        candidates = [
            token[3:] for token in legacy_sig.split() if token.startswith("v1,")
        ]
        digest = compute_signature(secret_bytes, legacy_ts.strip(), raw_body)
        if _matches_any(candidates, digest, allow_hex=False):
            return SCHEME_LEGACY
        raise WebhookSignatureError("legacy signature mismatch")

    if standard:
        raise WebhookSignatureError("signature mismatch or missing timestamp")
    raise WebhookSignatureError("missing signature headers")


def _matches_any(candidates: Iterable[str], digest: bytes, *, allow_hex: bool) -> bool:
    expected_hex = digest.hex().encode("ascii")
    expected_b64 = base64.b64encode(digest)
    matched = False
    for candidate in candidates:
        got = candidate.strip().encode("utf-8")
        if allow_hex and hmac.compare_digest(got.lower(), expected_hex):
            matched = True
        if hmac.compare_digest(got, expected_b64):
            matched = True
    return matched
