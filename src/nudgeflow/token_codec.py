"""Summary: Encoding for OAuth tokens kept in the mailbox connection table.

Importance: Keeps access and refresh tokens from sitting in SQLite as plaintext.
Alternatives: Use a dedicated secrets manager or strong encryption library.
"""

from __future__ import annotations

import base64
import binascii
import hashlib

_PREFIX = "v1:"


class TokenCodec:
    """Summary: Reversible keystream encoder for stored tokens.

    Importance: Every stored token goes through one codec bound to the deployment secret.
    Alternatives: Use a proper encryption library with key management.
    """

    def __init__(self, secret: str) -> None:
        self._secret = (secret or "nudgeflow").encode("utf-8")

    def encode(self, plaintext: str) -> str:
        """Summary: Encode a token for storage.

        Importance: Avoids storing raw tokens in SQLite.
        Alternatives: Store tokens in a vault.
        """

        raw = plaintext.encode("utf-8")
        key = _keystream(self._secret, len(raw))
        obfuscated = bytes(b ^ k for b, k in zip(raw, key))
        return _PREFIX + base64.urlsafe_b64encode(obfuscated).decode("ascii")

    def decode(self, payload: str) -> str:
        """Summary: Decode a stored token.

        Importance: Allows using stored tokens for provider calls.
        Alternatives: Skip decoding and require re-authentication.
        """

        if not payload.startswith(_PREFIX):
            raise ValueError("Stored token has an unknown encoding")
        try:
            raw = base64.urlsafe_b64decode(payload[len(_PREFIX):].encode("ascii"))
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Stored token is corrupt") from exc
        key = _keystream(self._secret, len(raw))
        return bytes(b ^ k for b, k in zip(raw, key)).decode("utf-8")

    def encode_optional(self, plaintext: str | None) -> str | None:
        return self.encode(plaintext) if plaintext else None

    def decode_optional(self, payload: str | None) -> str | None:
        return self.decode(payload) if payload else None


def _keystream(secret: bytes, length: int) -> bytes:
    """Derive a deterministic keystream of ``length`` bytes from the secret."""

    output = b""
    counter = 0
    while len(output) < length:
        output += hashlib.sha256(secret + counter.to_bytes(4, "big")).digest()
        counter += 1
    return output[:length]
