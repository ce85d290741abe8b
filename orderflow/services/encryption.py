from __future__ import annotations

import logging
import secrets
import time

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from orderflow.core.errors import ValidationError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 16


class EncryptionConfigError(RuntimeError):
    pass


class EncryptionService:
    """AES-256-CBC with PKCS7 padding; ciphertext travels as lowercase hex.

    Key material is validated once at construction so a misconfigured process
    refuses to start instead of failing on the first credential it touches.
    """

    def __init__(self, key_hex: str, iv_hex: str) -> None:
        self._key = _decode_hex(key_hex, KEY_BYTES, "ENCRYPTION_KEY")
        self._iv = _decode_hex(iv_hex, IV_BYTES, "ENCRYPTION_IV")

    @classmethod
    def from_config(cls) -> "EncryptionService":
        from orderflow.core.config import ENCRYPTION_IV, ENCRYPTION_KEY

        return cls(ENCRYPTION_KEY, ENCRYPTION_IV)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValidationError("Cannot encrypt empty value")
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher().encryptor()
        return (encryptor.update(padded) + encryptor.finalize()).hex()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise ValidationError("Cannot decrypt empty value")
        try:
            raw = bytes.fromhex(ciphertext)
        except ValueError as exc:
            raise ValidationError("Ciphertext is not valid hex") from exc
        decryptor = self._cipher().decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            padded = decryptor.update(raw) + decryptor.finalize()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except ValueError as exc:
            raise ValidationError("Ciphertext could not be decrypted") from exc

    def self_test(self) -> bool:
        sample = f"test_encryption_{int(time.time() * 1000)}"
        try:
            ok = self.decrypt(self.encrypt(sample)) == sample
        except ValidationError:
            logger.exception("encryption self-test failed")
            return False
        if not ok:
            logger.error("encryption self-test mismatch")
        return ok

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(self._iv))


def _decode_hex(value: str | None, expected_bytes: int, name: str) -> bytes:
    if not value:
        raise EncryptionConfigError(f"{name} is not configured")
    try:
        raw = bytes.fromhex(value)
    except ValueError as exc:
        raise EncryptionConfigError(f"{name} must be hex encoded") from exc
    if len(raw) != expected_bytes:
        raise EncryptionConfigError(
            f"{name} must be {expected_bytes * 2} hex characters ({expected_bytes} bytes), got {len(value)}"
        )
    return raw


def generate_key() -> str:
    return secrets.token_hex(KEY_BYTES)


def generate_iv() -> str:
    return secrets.token_hex(IV_BYTES)


def mask(value: str | None, visible: int = 4) -> str:
    if not value:
        return ""
    if len(value) <= visible:
        return "****"
    return f"****{value[-visible:]}"
