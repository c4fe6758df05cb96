"""
Obfuscation layer for carried relay payloads.

This is NOT encryption. Content is XORed with a fixed repeating key and
base64 encoded so that carriers do not hold plaintext at a glance. Anyone
who knows the key (it ships with every client) can read the payload.
The format must stay byte-compatible with existing clients, so do not
"upgrade" it.
"""

from __future__ import annotations

import base64
import binascii
import logging

from mesh_config import ObfuscationConfig

LOG = logging.getLogger(__name__)


class MeshObfuscator:
    """
    Reversible XOR + base64 transform.

    - encrypt(): UTF-8 encode, XOR each byte with key[i % len(key)], base64.
    - decrypt(): reverses exactly. Anything that does not decode is
      returned unchanged so one corrupt payload cannot stall a relay tick.
    """

    def __init__(self, config: ObfuscationConfig) -> None:
        key = config.key.encode("utf-8")
        if not key:
            raise ValueError("obfuscation key must not be empty")
        self._key = key

    def _xor(self, data: bytes) -> bytes:
        key = self._key
        klen = len(key)
        return bytes(b ^ key[i % klen] for i, b in enumerate(data))

    def encrypt(self, content: str) -> str:
        raw = self._xor(content.encode("utf-8"))
        return base64.b64encode(raw).decode("ascii")

    def decrypt(self, encrypted_content: str) -> str:
        try:
            raw = base64.b64decode(encrypted_content.encode("ascii"), validate=True)
            return self._xor(raw).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError):
            LOG.debug("Payload is not valid obfuscated content; passing through")
            return encrypted_content
