import hashlib
import hmac
from typing import Iterable, Optional, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SCHEMES = ("manifest", "body")


def parse_signature_header(header: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split ``ts=<unix>,v1=<hex>`` into its timestamp and MAC parts."""
    ts = v1 = None
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "ts":
            ts = value.strip() or None
        elif key == "v1":
            v1 = value.strip() or None
    return ts, v1


def manifest(payment_id: str, request_id: str, ts: str) -> str:
    return f"id:{payment_id};request-id:{request_id};ts:{ts};"


def body_manifest(ts: str, request_id: str, raw_body: bytes) -> bytes:
    return f"{ts}.{request_id}.".encode() + raw_body


def _digest(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


class SignatureVerifier:
    """Checks provider notifications against the shared webhook secret.

    Fails closed: with no secret configured every notification is rejected.
    """

    def __init__(self, secret: Optional[str], schemes: Iterable[str] = DEFAULT_SCHEMES):
        self._secret = secret or ""
        self._schemes = tuple(schemes)

    def verify(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        request_id: Optional[str],
        payment_id: Optional[str],
        timestamp: Optional[str] = None,
    ) -> bool:
        if not self._secret:
            logger.warning("signature.no_secret")
            return False
        if not signature_header or not request_id or not payment_id:
            return False

        ts, received = parse_signature_header(signature_header)
        if timestamp is not None and ts is not None and timestamp != ts:
            return False
        ts = ts or timestamp
        if not ts or not received or not _is_hex(received):
            return False
        received = received.lower()

        candidates = []
        if "manifest" in self._schemes:
            candidates.append(_digest(self._secret, manifest(str(payment_id), request_id, ts)))
        if "body" in self._schemes:
            candidates.append(_digest(self._secret, body_manifest(ts, request_id, raw_body or b"")))

        results = [hmac.compare_digest(received, computed) for computed in candidates]
        return any(results)
