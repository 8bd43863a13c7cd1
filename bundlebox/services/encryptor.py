# bundlebox/services/encryptor.py
import os
from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bundlebox.errors import CorruptArchiveError

NONCE_SIZE = 12


class ArchiveCipher:
    """Encrypts archive payloads with a fresh AES-256-GCM key per archive.

    The per-archive key never leaves the service: it is wrapped with the
    master key (Fernet) and the wrapped form is what gets stored next to the
    archive record.
    """

    def __init__(self, master_key: bytes):
        self.fernet = Fernet(master_key)

    def encrypt(self, data: bytes) -> tuple[bytes, bytes]:
        key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = nonce + AESGCM(key).encrypt(nonce, data, None)
        return ciphertext, self.fernet.encrypt(key)

    def decrypt(self, ciphertext: bytes, key_material: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE:
            raise CorruptArchiveError()
        try:
            key = self.fernet.decrypt(key_material)
            return AESGCM(key).decrypt(ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:], None)
        except (InvalidToken, InvalidTag, ValueError) as exc:
            raise CorruptArchiveError() from exc
