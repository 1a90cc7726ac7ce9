"""
Payment webhook signature verification.

The payment provider signs each notification with::

    x-signature: ts=<unix-seconds>,v1=<hex hmac-sha256>

where the signed string is ``"<ts>.<data.id>"`` and ``data.id`` comes from the
JSON body. Older integrations send ``sha256=<hex>`` computed over the whole
raw body; that form is accepted only after the primary scheme fails.

Verification never raises: every failure comes back as a ``SignatureResult``
with ``is_valid=False`` and an ``error`` string. Freshness of ``ts`` is the
caller's job (see ``is_timestamp_fresh``), done before verifying, so a
captured request cannot be replayed outside the tolerance window.
"""
import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass

DEFAULT_TOLERANCE_SECONDS = 300

_INVALID_DATA_IDS = {"", "undefined", "null", "none"}


@dataclass(frozen=True)
class SignatureResult:
    is_valid: bool
    data_id: str | None = None
    error: str | None = None


def _as_bytes(raw_body: str | bytes) -> bytes:
    return raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8")


def parse_signature_header(x_signature: str | None) -> tuple[str | None, str | None]:
    """Split ``ts=..,v1=..`` into (ts, v1); missing parts come back as None"""
    ts = None
    v1 = None
    if not x_signature:
        return ts, v1

    for part in x_signature.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        if key == "ts":
            ts = value.strip() or None
        elif key == "v1":
            v1 = value.strip() or None
    return ts, v1


def is_timestamp_fresh(
    ts: str | int | None,
    now: float | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """True when ``|now - ts| <= tolerance_seconds``; unparsable ts is never fresh"""
    if ts is None:
        return False
    try:
        ts_value = int(str(ts).strip())
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    return abs(current - ts_value) <= tolerance_seconds


def extract_data_id(raw_body: str | bytes) -> tuple[str | None, str | None]:
    """Return (data_id, error) from the JSON body's ``data.id``"""
    try:
        parsed = json.loads(_as_bytes(raw_body))
    except (ValueError, UnicodeDecodeError):
        return None, "Invalid JSON body"

    data = parsed.get("data") if isinstance(parsed, dict) else None
    raw_id = data.get("id") if isinstance(data, dict) else None
    if raw_id is None:
        return None, "Missing or invalid data.id"

    data_id = str(raw_id).strip()
    if data_id.lower() in _INVALID_DATA_IDS:
        return None, "Missing or invalid data.id"
    return data_id, None


def compute_signature(ts: str, data_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``"<ts>.<data_id>"``"""
    message = f"{ts}.{data_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def compute_body_signature(raw_body: str | bytes, secret: str) -> str:
    """Hex HMAC-SHA256 over the entire raw body (legacy scheme)"""
    return hmac.new(secret.encode("utf-8"), _as_bytes(raw_body), hashlib.sha256).hexdigest()


def _digests_match(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().lower().encode("utf-8"))


def verify_body_signature(raw_body: str | bytes, signature_header: str | None, secret: str) -> bool:
    """Check a ``sha256=<digest>`` (or bare digest) header against the raw body.

    The digest may be hex or base64.
    """
    if not signature_header or not secret:
        return False

    candidate = None
    for part in signature_header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep and key.strip().lower() == "sha256":
            candidate = value
            break
    if candidate is None:
        candidate = signature_header
    if not candidate:
        return False

    expected_hex = compute_body_signature(raw_body, secret)
    if _digests_match(expected_hex, candidate):
        return True
    expected_b64 = base64.b64encode(bytes.fromhex(expected_hex)).decode("ascii")
    return hmac.compare_digest(expected_b64.encode("ascii"), candidate.strip().encode("utf-8"))


def _verify_primary(raw_body: str | bytes, x_signature: str, secret: str) -> SignatureResult:
    ts, v1 = parse_signature_header(x_signature)
    if not ts or not v1:
        return SignatureResult(False, error="Invalid x-signature format: missing ts or v1")

    data_id, error = extract_data_id(raw_body)
    if error:
        return SignatureResult(False, error=error)

    if not _digests_match(compute_signature(ts, data_id, secret), v1):
        return SignatureResult(False, data_id=data_id, error="Signature mismatch")
    return SignatureResult(True, data_id=data_id)


def verify_payment_signature(
    raw_body: str | bytes,
    x_signature: str | None,
    x_request_id: str | None,
    secret: str | None,
    *,
    allow_legacy: bool = True,
) -> SignatureResult:
    if not secret:
        return SignatureResult(False, error="Webhook secret not configured")
    if not x_signature or not x_request_id:
        return SignatureResult(False, error="Missing x-signature or x-request-id header")

    result = _verify_primary(raw_body, x_signature, secret)
    if result.is_valid or not allow_legacy:
        return result

    if verify_body_signature(raw_body, x_signature, secret):
        data_id, _ = extract_data_id(raw_body)
        return SignatureResult(True, data_id=data_id)

    return result
