from __future__ import annotations

import hashlib
import secrets


BASE62_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"

# 248 = 62 * 4; bytes above this would bias the modulo and are resampled.
_MAX_UNBIASED_BYTE = 247


def hash_sha256(value: str) -> str:
    # Use SHA-256 for deterministic, non-reversible secret storage.
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_random_bytes(length: int) -> bytes:
    return secrets.token_bytes(length)


def bytes_to_base62(data: bytes) -> str:
    """Encode ``data`` into a base62 string of the same length.

    Bytes in the biased range (248-255) are skipped and replaced with fresh
    random bytes, so every output character is uniformly distributed.
    """
    target = len(data)
    chars: list[str] = []
    pending = data
    while len(chars) < target:
        for byte in pending:
            if byte <= _MAX_UNBIASED_BYTE:
                chars.append(BASE62_ALPHABET[byte % 62])
                if len(chars) == target:
                    break
        if len(chars) < target:
            pending = generate_random_bytes(target - len(chars))
    return "".join(chars)


def generate_random_token(length: int = 32) -> str:
    return bytes_to_base62(generate_random_bytes(length))
