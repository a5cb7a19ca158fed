"""
Public key encryption for backup archives.

The public key is fetched from a key server over HTTP, then the archive is
encrypted with a random AES-256-CTR key and authenticated with HMAC-SHA256.
Both symmetric keys are wrapped with the RSA public key (OAEP, SHA-256).

Encrypted file layout:
    [MAGIC(8)][WRAPPED_KEY_LEN(2)][WRAPPED_KEY][IV(16)][CIPHERTEXT...][HMAC(32)]
"""

import logging
import os
import struct

import requests
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


logger = logging.getLogger(__name__)

MAGIC = b'PGSTASH1'
IV_LEN = 16
KEY_LEN = 32
HMAC_LEN = 32
CHUNK_SIZE = 1024 * 1024
ENCRYPTED_SUFFIX = '.enc'


class CryptoError(Exception):
    """Raised when a key cannot be fetched or a file cannot be encrypted."""
    pass


def _oaep():
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


class PublicKeyEncryptor:
    """Encrypts files for the holder of a key published on a key server."""

    def __init__(self, key_id: str, key_server: str, timeout: float = 30, session=None):
        """
        Args:
            key_id: Identifier of the public key on the key server
            key_server: Base URL of the key server
            timeout: HTTP timeout in seconds
            session: Optional requests session
        """
        self.key_id = key_id
        self.key_server = key_server
        self.timeout = timeout
        self.session = session or requests.Session()
        self._public_key = None

    @property
    def key_url(self) -> str:
        return f"{self.key_server.rstrip('/')}/{self.key_id}"

    @property
    def has_key(self) -> bool:
        return self._public_key is not None

    def fetch_public_key(self):
        """
        Download and load the RSA public key.

        Returns:
            The loaded RSAPublicKey

        Raises:
            CryptoError: If the key cannot be downloaded or is not an RSA PEM key
        """
        try:
            response = self.session.get(self.key_url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CryptoError(f"Failed to fetch public key {self.key_id} from {self.key_server}: {e}")

        try:
            public_key = serialization.load_pem_public_key(response.content)
        except (ValueError, TypeError) as e:
            raise CryptoError(f"Invalid public key {self.key_id}: {e}")

        if not isinstance(public_key, rsa.RSAPublicKey):
            raise CryptoError(f"Public key {self.key_id} is not an RSA key")

        self._public_key = public_key
        return public_key

    def encrypt_file(self, path: str) -> str:
        """
        Encrypt a file, writing path + '.enc' next to it.

        The source file is left untouched.

        Returns:
            Path of the encrypted file

        Raises:
            CryptoError: If no key has been fetched or encryption fails
        """
        if self._public_key is None:
            raise CryptoError("Public key not loaded. Call fetch_public_key() first.")

        out_path = path + ENCRYPTED_SUFFIX
        enc_key = os.urandom(KEY_LEN)
        mac_key = os.urandom(KEY_LEN)
        iv = os.urandom(IV_LEN)

        try:
            wrapped_key = self._public_key.encrypt(enc_key + mac_key, _oaep())

            encryptor = Cipher(algorithms.AES(enc_key), modes.CTR(iv)).encryptor()
            mac = hmac.HMAC(mac_key, hashes.SHA256())

            with open(path, 'rb') as src, open(out_path, 'wb') as dst:
                header = MAGIC + struct.pack('>H', len(wrapped_key)) + wrapped_key + iv
                dst.write(header)
                mac.update(header)

                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    data = encryptor.update(chunk)
                    dst.write(data)
                    mac.update(data)

                tail = encryptor.finalize()
                if tail:
                    dst.write(tail)
                    mac.update(tail)

                dst.write(mac.finalize())

        except (OSError, ValueError) as e:
            if os.path.exists(out_path):
                try:
                    os.remove(out_path)
                except OSError:
                    pass
            raise CryptoError(f"Failed to encrypt {path}: {e}")

        logger.debug(f"Encrypted {path} -> {out_path}")
        return out_path
