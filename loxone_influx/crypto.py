"""
Loxone → InfluxDB bridge — Miniserver authentication helpers

Hash mode:
    jdev/sys/getkey  →  hex key
    authenticate/<HMAC-SHA1(key, "user:password")>

AES-256-CBC mode additionally:
    1. GET /jdev/sys/getPublicKey  (RSA key, mislabelled as a CERTIFICATE)
    2. jdev/sys/keyexchange/<base64 RSA(hex(aes_key):hex(aes_iv))>
    3. commands are wrapped as jdev/sys/enc/<urlencoded base64 AES(salt/<salt>/<cmd>)>
"""

import base64
import hashlib
import hmac
import os
import re
from dataclasses import dataclass, field
from urllib.parse import quote

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AES_BLOCK_SIZE = 16
SALT_BYTES = 2


def hash_credentials(key_hex: str, username: str, password: str) -> str:
    """HMAC-SHA1 of 'user:password' keyed with the one-time getkey value."""
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise ValueError(f"getkey returned a non-hex key: {key_hex!r}") from e
    digest = hmac.new(key, f"{username}:{password}".encode("utf-8"), hashlib.sha1)
    return digest.hexdigest()


def normalize_public_key(raw: str) -> bytes:
    """
    Turn the Miniserver's getPublicKey value into proper PEM.

    The Miniserver wraps an RSA public key in CERTIFICATE markers and
    usually omits line breaks.
    """
    body = re.sub(r"-----(BEGIN|END) [A-Z ]+-----", "", raw)
    body = re.sub(r"\s+", "", body)
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    pem = "-----BEGIN PUBLIC KEY-----\n" + "\n".join(lines) + "\n-----END PUBLIC KEY-----\n"
    return pem.encode("ascii")


@dataclass
class AESSession:
    """AES-256-CBC session key shared with the Miniserver."""

    key: bytes = field(default_factory=lambda: os.urandom(32))
    iv: bytes = field(default_factory=lambda: os.urandom(AES_BLOCK_SIZE))
    salt: str = field(default_factory=lambda: os.urandom(SALT_BYTES).hex())

    def session_key_payload(self, public_key_pem: bytes) -> str:
        """RSA-encrypt 'hexkey:hexiv' for jdev/sys/keyexchange."""
        public_key = serialization.load_pem_public_key(public_key_pem)
        plain = f"{self.key.hex()}:{self.iv.hex()}".encode("ascii")
        cipher = public_key.encrypt(plain, asym_padding.PKCS1v15())
        return base64.b64encode(cipher).decode("ascii")

    def encrypt(self, text: str) -> str:
        """AES-CBC encrypt with zero padding, base64 encoded."""
        data = text.encode("utf-8") + b"\x00"
        data += b"\x00" * ((-len(data)) % AES_BLOCK_SIZE)
        encryptor = Cipher(algorithms.AES(self.key), modes.CBC(self.iv)).encryptor()
        return base64.b64encode(encryptor.update(data) + encryptor.finalize()).decode("ascii")

    def decrypt(self, b64_text: str) -> str:
        decryptor = Cipher(algorithms.AES(self.key), modes.CBC(self.iv)).decryptor()
        plain = decryptor.update(base64.b64decode(b64_text)) + decryptor.finalize()
        return plain.rstrip(b"\x00").decode("utf-8")

    def encrypt_command(self, command: str) -> str:
        """Wrap a command for jdev/sys/enc/."""
        cipher = self.encrypt(f"salt/{self.salt}/{command}")
        return f"jdev/sys/enc/{quote(cipher, safe='')}"
