"""
Envelope encryption of audit event details.

Each event gets a fresh 256-bit data key. Details are sealed with
AES-256-GCM under that key, and the data key itself is encrypted by a key
provider (AWS KMS in production, a local master key in development). The
stored envelope carries the encrypted data key, nonce, ciphertext and the
encryption context, which is bound as associated data.

Which protector applies to which data classification is decided once when
the ledger is built (see build_protectors).
"""

import base64
import json
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from carebridge.audit.events import (
    ENCRYPTED_CLASSIFICATIONS,
    AuditError,
    DataClassification,
    canonical_json,
)
from carebridge.errors.types import KeyManagementError

ALGORITHM = "AES-256-GCM"
ENVELOPE_VERSION = "1.0"
NONCE_BYTES = 12

EncryptionContext = Dict[str, str]


class AuditDecryptionError(AuditError):
    """Raised when stored details cannot be decrypted."""

    pass


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


class KeyProvider(ABC):
    """Issues and unwraps data keys."""

    @abstractmethod
    def generate_data_key(self, context: EncryptionContext) -> Tuple[bytes, bytes]:
        """Return (plaintext_key, encrypted_key) for a new 256-bit data key."""

    @abstractmethod
    def decrypt_data_key(self, encrypted_key: bytes, context: EncryptionContext) -> bytes:
        """Recover the plaintext data key."""


class KmsKeyProvider(KeyProvider):
    """Data keys from AWS KMS."""

    def __init__(self, key_id: str, region: str = "eu-west-1", client: Any = None):
        """
        Args:
            key_id: KMS key id, ARN or alias
            region: AWS region for the default client
            client: Preconfigured boto3 KMS client (created lazily if not provided)
        """
        self.key_id = key_id
        self.region = region
        self._client = client

    def _get_client(self):
        if self._client is not None:
            return self._client

        import boto3

        self._client = boto3.client("kms", region_name=self.region)
        return self._client

    def generate_data_key(self, context: EncryptionContext) -> Tuple[bytes, bytes]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().generate_data_key(
                KeyId=self.key_id,
                KeySpec="AES_256",
                EncryptionContext=context,
            )
        except (BotoCoreError, ClientError) as e:
            raise KeyManagementError(f"KMS data key generation failed: {e}", dependency="key_management") from e
        return response["Plaintext"], response["CiphertextBlob"]

    def decrypt_data_key(self, encrypted_key: bytes, context: EncryptionContext) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().decrypt(
                CiphertextBlob=encrypted_key,
                EncryptionContext=context,
                KeyId=self.key_id,
            )
        except (BotoCoreError, ClientError) as e:
            raise KeyManagementError(f"KMS data key decryption failed: {e}", dependency="key_management") from e
        return response["Plaintext"]


class LocalKeyProvider(KeyProvider):
    """Data keys wrapped under a local AES-256 master key."""

    def __init__(self, master_key: bytes):
        if len(master_key) != 32:
            raise ValueError("Master key must be 32 bytes")
        self._master = AESGCM(master_key)

    @classmethod
    def from_secret(cls, secret: str) -> "LocalKeyProvider":
        """Derive the master key from a configured secret with HKDF-SHA256."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"carebridge-audit-master-key",
        )
        return cls(hkdf.derive(secret.encode("utf-8")))

    def generate_data_key(self, context: EncryptionContext) -> Tuple[bytes, bytes]:
        data_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_BYTES)
        wrapped = self._master.encrypt(nonce, data_key, canonical_json(context).encode("utf-8"))
        return data_key, nonce + wrapped

    def decrypt_data_key(self, encrypted_key: bytes, context: EncryptionContext) -> bytes:
        nonce, wrapped = encrypted_key[:NONCE_BYTES], encrypted_key[NONCE_BYTES:]
        try:
            return self._master.decrypt(nonce, wrapped, canonical_json(context).encode("utf-8"))
        except InvalidTag as e:
            raise KeyManagementError("Data key could not be unwrapped", dependency="key_management") from e


class DetailsProtector(ABC):
    """Turns event details into their stored form and back."""

    @abstractmethod
    def protect(self, details: Dict[str, Any], context: EncryptionContext) -> Dict[str, Any]:
        """Return the form of the details to store."""

    @abstractmethod
    def reveal(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        """Return the original details from their stored form."""


class PlaintextDetails(DetailsProtector):
    """Stores details as given."""

    def protect(self, details: Dict[str, Any], context: EncryptionContext) -> Dict[str, Any]:
        return details

    def reveal(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        return stored


class EnvelopeEncryptedDetails(DetailsProtector):
    """Stores details as an AES-256-GCM envelope."""

    def __init__(self, key_provider: KeyProvider):
        self.key_provider = key_provider

    def protect(self, details: Dict[str, Any], context: EncryptionContext) -> Dict[str, Any]:
        plaintext_key, encrypted_key = self.key_provider.generate_data_key(context)
        nonce = os.urandom(NONCE_BYTES)
        aad = canonical_json(context).encode("utf-8")
        ciphertext = AESGCM(plaintext_key).encrypt(nonce, canonical_json(details).encode("utf-8"), aad)
        return {
            "encrypted": True,
            "algorithm": ALGORITHM,
            "version": ENVELOPE_VERSION,
            "encrypted_key": _b64(encrypted_key),
            "nonce": _b64(nonce),
            "data": _b64(ciphertext),
            "context": dict(context),
        }

    def reveal(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        if not stored.get("encrypted"):
            return stored
        if stored.get("algorithm") != ALGORITHM:
            raise AuditDecryptionError(f"Unsupported algorithm: {stored.get('algorithm')}")

        context: EncryptionContext = stored.get("context") or {}
        plaintext_key = self.key_provider.decrypt_data_key(_unb64(stored["encrypted_key"]), context)
        try:
            plaintext = AESGCM(plaintext_key).decrypt(
                _unb64(stored["nonce"]),
                _unb64(stored["data"]),
                canonical_json(context).encode("utf-8"),
            )
        except InvalidTag as e:
            raise AuditDecryptionError("Event details failed authentication") from e
        return json.loads(plaintext.decode("utf-8"))


def select_details_protector(
    classification: str,
    key_provider: Optional[KeyProvider],
) -> DetailsProtector:
    """Protector for one data classification."""
    if classification in ENCRYPTED_CLASSIFICATIONS:
        if key_provider is None:
            raise ValueError(f"A key provider is required for {classification} details")
        return EnvelopeEncryptedDetails(key_provider)
    return PlaintextDetails()


def build_protectors(key_provider: Optional[KeyProvider]) -> Mapping[str, DetailsProtector]:
    """Protector for every data classification.

    Without a key provider, encrypted classifications get no protector
    and cannot be written.
    """
    return {
        classification.value: select_details_protector(classification.value, key_provider)
        for classification in DataClassification
        if key_provider is not None or classification.value not in ENCRYPTED_CLASSIFICATIONS
    }
