"""HMAC signing primitives for the RTMS handshakes and webhook validation.

Both the signaling and the media handshake authenticate with the same
signature: HMAC-SHA256 over ``"{client_id},{meeting_uuid},{stream_id}"``
keyed with the app's client secret, hex encoded. The webhook
``endpoint.url_validation`` challenge uses the same HMAC keyed with the
webhook secret token.
"""

from __future__ import annotations

import hashlib
import hmac

from src.rtms_relay.rtms.errors import SignatureError

SIGNATURE_DELIMITER = ","


def hmac_sha256_hex(key: str, message: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of ``message`` keyed with ``key``.

    Raises:
        SignatureError: If ``key`` is empty.
    """
    if not key:
        raise SignatureError("HMAC key is not configured")
    digest = hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()


def generate_signature(
    client_id: str,
    meeting_uuid: str,
    stream_id: str,
    secret: str,
) -> str:
    """Compute the RTMS handshake signature.

    Deterministic for identical inputs; changing any one of them changes
    the digest.

    Args:
        client_id: Zoom app client id.
        meeting_uuid: Meeting UUID from the rtms_started webhook.
        stream_id: RTMS stream id from the rtms_started webhook.
        secret: Zoom app client secret.

    Returns:
        Hex-encoded HMAC-SHA256 digest.

    Raises:
        SignatureError: If ``secret`` is missing.
    """
    if not secret:
        raise SignatureError("ZOOM_CLIENT_SECRET is required to sign RTMS handshakes")
    message = SIGNATURE_DELIMITER.join((client_id, meeting_uuid, stream_id))
    return hmac_sha256_hex(secret, message)


class SignatureProvider:
    """Signs RTMS handshakes with a fixed set of app credentials.

    Args:
        client_id: Zoom app client id.
        client_secret: Zoom app client secret.
    """

    def __init__(self, client_id: str, client_secret: str) -> None:
        self._client_id = client_id
        self._client_secret = client_secret

    def sign(self, meeting_uuid: str, stream_id: str) -> str:
        """Signature for one meeting stream."""
        return generate_signature(
            self._client_id, meeting_uuid, stream_id, self._client_secret
        )
