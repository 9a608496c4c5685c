"""
Token Codec
Turns a raw access token into an opaque, URL-embeddable string and back.

Two schemes coexist because tokens issued before the move to AES-GCM are
still printed on patients' QR cards:

- current: AES-256-GCM keyed from the application secret, URL-safe base64
- legacy:  base64, reversed, wrapped in a 6-char random prefix and suffix

Decoding is an ordered list of strategies; callers try each in turn and
keep the first candidate the token store recognises.
"""

import base64
import binascii
import logging
import os
import secrets
import string
from functools import lru_cache
from typing import Optional, List

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from medaccess.config import settings

logger = logging.getLogger(__name__)

KDF_SALT = b"medaccess.qr-codec.v1"
KDF_ITERATIONS = 100_000
NONCE_BYTES = 12
TAG_BYTES = 16

LEGACY_AFFIX_LENGTH = 6
LEGACY_AFFIX_ALPHABET = string.ascii_lowercase + string.digits


def _urlsafe_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _urlsafe_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


@lru_cache(maxsize=8)
def _derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


class CodecStrategy:
    """One decoding scheme. try_decode returns None instead of raising."""
    name = "base"

    def try_decode(self, opaque: str) -> Optional[str]:
        raise NotImplementedError


class AesGcmStrategy(CodecStrategy):
    name = "aes_gcm"

    def __init__(self, secret: str):
        self._aead = AESGCM(_derive_key(secret))

    def encode(self, raw: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, raw.encode("utf-8"), None)
        return _urlsafe_encode(nonce + sealed)

    def try_decode(self, opaque: str) -> Optional[str]:
        try:
            blob = _urlsafe_decode(opaque)
        except (binascii.Error, ValueError):
            return None
        if len(blob) <= NONCE_BYTES + TAG_BYTES:
            return None
        try:
            plain = self._aead.decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], None)
            decoded = plain.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            return None
        return decoded or None


class LegacyStrategy(CodecStrategy):
    name = "legacy"

    def encode(self, raw: str) -> str:
        encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
        prefix = "".join(secrets.choice(LEGACY_AFFIX_ALPHABET) for _ in range(LEGACY_AFFIX_LENGTH))
        suffix = "".join(secrets.choice(LEGACY_AFFIX_ALPHABET) for _ in range(LEGACY_AFFIX_LENGTH))
        return f"{prefix}{encoded[::-1]}{suffix}"

    def try_decode(self, opaque: str) -> Optional[str]:
        # Nothing left once the prefix and suffix are removed
        if len(opaque) <= 2 * LEGACY_AFFIX_LENGTH:
            return None
        body = opaque[LEGACY_AFFIX_LENGTH:-LEGACY_AFFIX_LENGTH][::-1]
        try:
            decoded = base64.b64decode(body, validate=True).decode("utf-8")
        except (binascii.Error, ValueError):
            return None
        return decoded or None


class PassthroughStrategy(CodecStrategy):
    """Some historical tokens were shared without any encoding"""
    name = "passthrough"

    def try_decode(self, opaque: str) -> Optional[str]:
        return opaque or None


class TokenCodec:
    """
    Encodes with the current scheme; decodes with current then legacy.

    Passthrough is not part of decode() itself: the validator appends it as
    the last strategy so that "could not decode" stays distinguishable.
    """

    def __init__(self, secret: Optional[str] = None):
        self.current = AesGcmStrategy(secret or settings.get_qr_encryption_key())
        self.legacy = LegacyStrategy()

    @property
    def strategies(self) -> List[CodecStrategy]:
        return [self.current, self.legacy]

    def decode_strategies(self) -> List[CodecStrategy]:
        """Full chain tried by the validator"""
        return [*self.strategies, PassthroughStrategy()]

    def encode(self, raw: str) -> str:
        if not raw:
            raise ValueError("Cannot encode an empty token")
        try:
            return self.current.encode(raw)
        except Exception as e:
            logger.error(f"Token encryption failed, using legacy encoding: {type(e).__name__}")
            return self.legacy.encode(raw)

    def decode(self, opaque: str) -> Optional[str]:
        if not opaque:
            return None
        for strategy in self.strategies:
            decoded = strategy.try_decode(opaque)
            if decoded is not None:
                return decoded
        return None

    def generate_secure_qr_url(self, raw: str, base_url: Optional[str] = None) -> str:
        base = (base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        return f"{base}/qr/{self.encode(raw)}"


def decode_qr_key(opaque: str, codec: Optional[TokenCodec] = None) -> Optional[str]:
    """Client-side decode of a public QR link before calling the emergency flow"""
    return (codec or TokenCodec()).decode(opaque)
