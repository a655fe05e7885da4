"""
Whole-file symmetric encryption for export artifacts.

AES-256 in CTR mode with a key derived from the passphrase through
PBKDF2-HMAC-SHA256. Encrypted files are laid out as::

    iv (16 bytes) | salt (8 bytes) | ciphertext
"""
import os
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dataexport.core.exceptions import DecryptionError

KEY_LENGTH = 32
IV_LENGTH = 16
SALT_LENGTH = 8
ITERATIONS = 10000
CHUNK_SIZE = 1024 * 1024


def derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_file(path: Path, passphrase: str) -> Path:
    """Encrypt a file in place; the plaintext is replaced."""
    path = Path(path)
    iv = os.urandom(IV_LENGTH)
    salt = os.urandom(SALT_LENGTH)
    encryptor = Cipher(algorithms.AES(derive_key(passphrase, salt)), modes.CTR(iv)).encryptor()

    temp_path = path.with_name(path.name + ".enc")
    try:
        with open(path, "rb") as source, open(temp_path, "wb") as target:
            target.write(iv)
            target.write(salt)
            for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                target.write(encryptor.update(chunk))
            target.write(encryptor.finalize())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return path


def decrypt_file(path: Path, passphrase: str, output: Optional[Path] = None) -> Path:
    """
    Decrypt a file produced by ``encrypt_file``.

    Writes to ``output`` when given, otherwise replaces the file in place.

    Raises:
        DecryptionError: if the file is too short to hold the iv and salt
    """
    path = Path(path)
    output = Path(output) if output else path
    temp_path = output.with_name(output.name + ".dec")

    try:
        with open(path, "rb") as source:
            iv = source.read(IV_LENGTH)
            salt = source.read(SALT_LENGTH)
            if len(iv) != IV_LENGTH or len(salt) != SALT_LENGTH:
                raise DecryptionError(f"{path.name} is not an encrypted export")

            decryptor = Cipher(algorithms.AES(derive_key(passphrase, salt)), modes.CTR(iv)).decryptor()
            with open(temp_path, "wb") as target:
                for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                    target.write(decryptor.update(chunk))
                target.write(decryptor.finalize())
        os.replace(temp_path, output)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output
