from __future__ import annotations

import hashlib
import hmac
import json
import re
from typing import Any, Callable, Mapping, Optional


SIGNATURE_HEADER = "x-retell-signature"
SIGNATURE_TOLERANCE_MS = 5 * 60 * 1000

_SIGNATURE_RE = re.compile(r"^v=(\d+),d=([0-9a-fA-F]+)$")

# (raw_body, signature_header_value) -> valid?
SignatureVerifier = Callable[[str, str], bool]


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    for k, v in (headers or {}).items():
        if str(k).lower() == name.lower():
            return v
    return None


def sign_webhook_body(*, body: str, api_key: str, timestamp_ms: int) -> str:
    digest = hmac.new(api_key.encode("utf-8"), f"{body}{int(timestamp_ms)}".encode("utf-8"), hashlib.sha256)
    return f"v={int(timestamp_ms)},d={digest.hexdigest()}"


def verify_webhook_signature(
    *,
    body: str,
    signature: str,
    api_key: str,
    now_ms: int,
    tolerance_ms: int = SIGNATURE_TOLERANCE_MS,
) -> bool:
    """
    Platform webhook signature check.

    The header carries `v=<unix ms>,d=<hex HMAC-SHA256(api_key, body + unix ms)>`. Stale
    timestamps are rejected so a captured request cannot be replayed later.
    """
    api_key = (api_key or "").strip()
    if not api_key:
        return False
    m = _SIGNATURE_RE.match((signature or "").strip())
    if m is None:
        return False
    timestamp_ms = int(m.group(1))
    if abs(int(now_ms) - timestamp_ms) > int(tolerance_ms):
        return False
    expected = sign_webhook_body(body=body, api_key=api_key, timestamp_ms=timestamp_ms)
    return hmac.compare_digest(expected, f"v={timestamp_ms},d={m.group(2).lower()}")


def compact_json(payload: Any) -> str:
    """The platform signs the compact JSON rendering of the payload."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def build_webhook_verifier(*, api_key: str, now_ms: Callable[[], int]) -> SignatureVerifier:
    def _verify(body: str, signature: str) -> bool:
        return verify_webhook_signature(body=body, signature=signature, api_key=api_key, now_ms=now_ms())

    return _verify
