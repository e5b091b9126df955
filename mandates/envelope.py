"""
Hybrid RSA/AES envelope required by the bank's UPI mandate API.

Every request and response body is wrapped as:
- encryptedKey: a random 16-byte AES session key, RSA-encrypted with
  PKCS#1 v1.5 padding (no OAEP)
- iv: a random 16-byte initialisation vector
- encryptedData: the compact JSON payload, AES-128-CBC with PKCS#7 padding

All three values travel base64-encoded.

Outbound payloads are encrypted with the bank's public certificate; inbound
payloads were encrypted by the bank with our public key and are opened with
our private key. The private key is ours and is shared by every tenant.

Two wire variants exist for responses: IV sent separately in `iv`, or IV
prepended to the ciphertext with `iv` empty.
"""
import base64
import binascii
import json
import logging
from functools import lru_cache

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from Crypto.Cipher import AES, PKCS1_v1_5
from Crypto.PublicKey import RSA
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad
from django.conf import settings

logger = logging.getLogger(__name__)

SESSION_KEY_SIZE = 16
IV_SIZE = 16


class EnvelopeError(Exception):
    """Base class for crypto-layer failures. These are configuration faults, never retried."""


class EncryptionError(EnvelopeError):
    """Raised when a payload cannot be encrypted or key material cannot be loaded."""


class DecryptionError(EnvelopeError):
    """Raised when an inbound envelope cannot be opened or does not contain JSON."""


def _b64decode(value, field):
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecryptionError(f"{field} is not valid base64: {e}")


class BankEnvelope:
    """Encrypt and decrypt bank payloads.

    Args:
        bank_public_key: RSA public key (Crypto.PublicKey.RSA.RsaKey) of the bank
        private_key: our RSA private key, used to open bank responses and callbacks
    """

    def __init__(self, bank_public_key, private_key):
        if bank_public_key is None or private_key is None:
            raise EncryptionError("Both the bank public key and our private key are required")
        if not private_key.has_private():
            raise EncryptionError("Decryption key has no private component")
        self.bank_public_key = bank_public_key
        self.private_key = private_key

    def encrypt(self, payload):
        """
        Encrypt a JSON-serialisable payload.

        Returns:
            dict: {"encryptedKey": str, "iv": str, "encryptedData": str}, all base64

        Raises:
            EncryptionError: on serialisation or cipher failure
        """
        try:
            session_key = get_random_bytes(SESSION_KEY_SIZE)
            iv = get_random_bytes(IV_SIZE)

            encrypted_key = PKCS1_v1_5.new(self.bank_public_key).encrypt(session_key)

            plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            cipher = AES.new(session_key, AES.MODE_CBC, iv)
            encrypted_data = cipher.encrypt(pad(plaintext, AES.block_size))
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Encryption failed: {e}")

        return {
            "encryptedKey": base64.b64encode(encrypted_key).decode("ascii"),
            "iv": base64.b64encode(iv).decode("ascii"),
            "encryptedData": base64.b64encode(encrypted_data).decode("ascii"),
        }

    def decrypt(self, encrypted_data, encrypted_key, iv=None):
        """
        Open an envelope and return the decoded JSON value.

        When `iv` is missing or blank, the first 16 bytes of the decoded
        ciphertext are taken as the IV and stripped before AES decryption.

        Raises:
            DecryptionError: bad base64, session key length other than 16 bytes,
                AES/padding failure, or non-JSON plaintext
        """
        if not encrypted_data or not encrypted_key:
            raise DecryptionError("encryptedData and encryptedKey are both required")

        key_bytes = _b64decode(encrypted_key, "encryptedKey")
        data_bytes = _b64decode(encrypted_data, "encryptedData")

        if iv and str(iv).strip():
            iv_bytes = _b64decode(iv, "iv")
        else:
            if len(data_bytes) < IV_SIZE:
                raise DecryptionError("Encrypted data is too short to contain an IV")
            iv_bytes = data_bytes[:IV_SIZE]
            data_bytes = data_bytes[IV_SIZE:]

        if len(iv_bytes) != IV_SIZE:
            raise DecryptionError(f"Invalid IV length: {len(iv_bytes)} bytes")

        try:
            session_key = PKCS1_v1_5.new(self.private_key).decrypt(key_bytes, None)
        except (TypeError, ValueError) as e:
            raise DecryptionError(f"Session key decryption failed: {e}")

        if session_key is None:
            raise DecryptionError("Session key decryption failed: bad padding")
        if len(session_key) != SESSION_KEY_SIZE:
            raise DecryptionError(f"Invalid session key length: {len(session_key)} bytes")

        try:
            cipher = AES.new(session_key, AES.MODE_CBC, iv_bytes)
            plaintext = unpad(cipher.decrypt(data_bytes), AES.block_size)
        except ValueError as e:
            raise DecryptionError(f"Payload decryption failed: {e}")

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError(f"Decrypted payload is not valid JSON: {e}")


def load_public_key(data):
    """
    Load the bank's RSA public key from certificate bytes.

    Accepts a PEM or DER X.509 certificate, or a bare PEM public key.
    """
    try:
        if b"-----BEGIN CERTIFICATE-----" in data:
            cert = x509.load_pem_x509_certificate(data)
        elif b"-----BEGIN" in data:
            return RSA.import_key(data)
        else:
            cert = x509.load_der_x509_certificate(data)
        pem = cert.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return RSA.import_key(pem)
    except (TypeError, ValueError, IndexError) as e:
        raise EncryptionError(f"Failed to parse bank public certificate: {e}")


def load_private_key(data, passphrase=None):
    """Load our RSA private key from PEM/DER bytes."""
    try:
        return RSA.import_key(data, passphrase=passphrase or None)
    except (TypeError, ValueError, IndexError) as e:
        raise EncryptionError(f"Failed to parse private key: {e}")


def load_envelope(public_cert_path, private_key_path, passphrase=None):
    """Build a BankEnvelope from the certificate and key files on disk."""
    try:
        with open(public_cert_path, "rb") as fh:
            cert_data = fh.read()
        with open(private_key_path, "rb") as fh:
            key_data = fh.read()
    except OSError as e:
        raise EncryptionError(f"Failed to read key material: {e}")

    return BankEnvelope(load_public_key(cert_data), load_private_key(key_data, passphrase))


@lru_cache(maxsize=1)
def get_envelope():
    """
    Process-wide envelope built from settings.BANK.

    Key material is read once; call `get_envelope.cache_clear()` after
    rotating certificates.
    """
    cfg = settings.BANK
    cert_path = cfg.get("PUBLIC_CERT_PATH")
    key_path = cfg.get("PRIVATE_KEY_PATH")
    if not cert_path or not key_path:
        raise EncryptionError("BANK configuration missing: PUBLIC_CERT_PATH and PRIVATE_KEY_PATH required")

    envelope = load_envelope(cert_path, key_path, cfg.get("PRIVATE_KEY_PASSPHRASE"))
    logger.info("Bank envelope key material loaded")
    return envelope
