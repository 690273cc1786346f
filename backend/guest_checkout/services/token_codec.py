"""Authenticated encoding of guest payment tokens.

A token is the canonical JSON form of a PaymentToken, encrypted with AES-CBC
under a random IV and authenticated with HMAC-SHA256 (encrypt-then-MAC). The
version byte, IV, ciphertext and MAC are concatenated and base64url encoded
without padding, so the result can be dropped into a query string as is.

Encryption, MAC and fingerprint keys are all derived from the one configured
key with HKDF. Changing the configured key (or either host secret it defaults
to) therefore invalidates every outstanding token.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import re
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from guest_checkout.services.token_errors import DecodeError, DecodeErrorKind

_KEY_SIZES = {
    "aes-128-cbc": 16,
    "aes-192-cbc": 24,
    "aes-256-cbc": 32,
}

_FORMAT_VERSION = b"\x01"
_IV_SIZE = 16
_BLOCK_SIZE = 16
_MAC_SIZE = 32
_MIN_SEALED_SIZE = len(_FORMAT_VERSION) + _IV_SIZE + _BLOCK_SIZE + _MAC_SIZE

_BASE64URL = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class PaymentToken:
    """Payload carried inside a payment link.

    Timestamps are timezone-aware UTC with whole-second precision; that is
    the resolution the encoded form keeps.

    Attributes:
        order_id: Order the link pays for.
        guest_email: Address the link was issued to. Empty for links
            generated for manual sharing without an address.
        issued_at: When the token was created.
        expires_at: Hard expiry, fixed at issuance.
        nonce: Random hex string; makes every token unique.
    """

    order_id: int
    guest_email: str
    issued_at: datetime
    expires_at: datetime
    nonce: str

    @classmethod
    def issue(
        cls,
        order_id: int,
        guest_email: str,
        *,
        now: datetime,
        ttl: timedelta,
    ) -> "PaymentToken":
        """Create a fresh token payload.

        Args:
            order_id: Target order.
            guest_email: Recipient address (may be empty).
            now: Issuance time.
            ttl: Lifetime of the token.

        Returns:
            PaymentToken with a new 128-bit nonce.
        """
        issued_at = now.astimezone(UTC).replace(microsecond=0)
        return cls(
            order_id=order_id,
            guest_email=guest_email,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            nonce=secrets.token_hex(16),
        )

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` has reached the expiry time."""
        return now >= self.expires_at


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    """Strict base64url decode.

    Characters outside the URL-safe alphabet and lengths too short for a
    sealed value are MALFORMED. A well-formed string whose trailing bits
    are not canonical is an edited token, so it fails the integrity check.
    """
    if not _BASE64URL.fullmatch(text):
        raise DecodeError(DecodeErrorKind.MALFORMED)
    try:
        raw = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(DecodeErrorKind.MALFORMED) from exc
    if len(raw) < _MIN_SEALED_SIZE:
        raise DecodeError(DecodeErrorKind.MALFORMED)
    if _b64encode(raw) != text:
        raise DecodeError(DecodeErrorKind.INVALID_CIPHERTEXT)
    return raw


class TokenCodec:
    """Encodes, decodes and fingerprints payment tokens.

    Holds no state beyond the derived keys, so one instance can be shared by
    every request that uses the same configuration.
    """

    def __init__(self, key: str, method: str = "aes-256-cbc") -> None:
        """Derive cipher, MAC and fingerprint keys.

        Args:
            key: Configured key material. Weak keys are accepted; flagging
                them is the configuration layer's job.
            method: One of ``aes-128-cbc``, ``aes-192-cbc``, ``aes-256-cbc``.

        Raises:
            ValueError: If the method is not supported.
        """
        method = method.lower()
        if method not in _KEY_SIZES:
            msg = f"Unsupported encryption method: {method}"
            raise ValueError(msg)
        key_size = _KEY_SIZES[method]
        material = HKDF(
            algorithm=hashes.SHA256(),
            length=key_size + 2 * _MAC_SIZE,
            salt=None,
            info=b"wicket-guest-payment:" + method.encode("ascii"),
        ).derive(key.encode("utf-8"))
        self.method = method
        self._cipher_key = material[:key_size]
        self._mac_key = material[key_size : key_size + _MAC_SIZE]
        self._fingerprint_key = material[key_size + _MAC_SIZE :]

    # =========================================================================
    # Tokens
    # =========================================================================

    def encode(self, payload: PaymentToken) -> str:
        """Encrypt and authenticate a payload into a URL-safe string.

        Args:
            payload: Token payload.

        Returns:
            Opaque base64url token.
        """
        document = {
            "e": payload.guest_email,
            "exp": int(payload.expires_at.timestamp()),
            "iat": int(payload.issued_at.timestamp()),
            "n": payload.nonce,
            "o": payload.order_id,
        }
        serialized = json.dumps(document, sort_keys=True, separators=(",", ":"))
        return _b64encode(self._seal_bytes(serialized.encode("utf-8")))

    def decode(self, token: str) -> PaymentToken:
        """Verify and decrypt a token string.

        Args:
            token: String taken from a payment link.

        Returns:
            The authenticated payload.

        Raises:
            DecodeError: MALFORMED if the string is not a token at all,
                INVALID_CIPHERTEXT if it fails the integrity check.
        """
        plaintext = self._open_bytes(_b64decode(token))
        try:
            document = json.loads(plaintext.decode("utf-8"))
            order_id = document["o"]
            guest_email = document["e"]
            nonce = document["n"]
            if not (
                isinstance(order_id, int)
                and isinstance(guest_email, str)
                and isinstance(nonce, str)
            ):
                raise TypeError("unexpected payload field types")
            return PaymentToken(
                order_id=order_id,
                guest_email=guest_email,
                issued_at=datetime.fromtimestamp(document["iat"], UTC),
                expires_at=datetime.fromtimestamp(document["exp"], UTC),
                nonce=nonce,
            )
        except (ValueError, KeyError, TypeError, OverflowError, OSError) as exc:
            raise DecodeError(DecodeErrorKind.MALFORMED) from exc

    def fingerprint(self, token: str) -> str:
        """Keyed one-way hash of a token string.

        Args:
            token: Encoded token.

        Returns:
            Hex HMAC-SHA256 digest.
        """
        return hmac.new(
            self._fingerprint_key, token.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    # =========================================================================
    # Sealing arbitrary values at rest
    # =========================================================================

    def seal(self, value: str) -> str:
        """Encrypt an arbitrary string with the token key."""
        return _b64encode(self._seal_bytes(value.encode("utf-8")))

    def unseal(self, sealed: str) -> str:
        """Inverse of seal().

        Raises:
            DecodeError: If the value was not sealed with this key.
        """
        try:
            return self._open_bytes(_b64decode(sealed)).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(DecodeErrorKind.MALFORMED) from exc

    # =========================================================================
    # Internals
    # =========================================================================

    def _seal_bytes(self, plaintext: bytes) -> bytes:
        iv = os.urandom(_IV_SIZE)
        padder = padding.PKCS7(_BLOCK_SIZE * 8).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._cipher_key), modes.CBC(iv)).encryptor()
        body = _FORMAT_VERSION + iv + encryptor.update(padded) + encryptor.finalize()
        mac = hmac.new(self._mac_key, body, hashlib.sha256).digest()
        return body + mac

    def _open_bytes(self, raw: bytes) -> bytes:
        if len(raw) < _MIN_SEALED_SIZE:
            raise DecodeError(DecodeErrorKind.MALFORMED)
        body, mac = raw[:-_MAC_SIZE], raw[-_MAC_SIZE:]
        expected = hmac.new(self._mac_key, body, hashlib.sha256).digest()
        if not hmac.compare_digest(mac, expected):
            raise DecodeError(DecodeErrorKind.INVALID_CIPHERTEXT)

        # Authenticated from here on; anything odd is a format problem.
        version = body[:1]
        iv = body[1 : 1 + _IV_SIZE]
        ciphertext = body[1 + _IV_SIZE :]
        if version != _FORMAT_VERSION or len(ciphertext) % _BLOCK_SIZE:
            raise DecodeError(DecodeErrorKind.MALFORMED)

        decryptor = Cipher(algorithms.AES(self._cipher_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_SIZE * 8).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecodeError(DecodeErrorKind.INVALID_CIPHERTEXT) from exc
