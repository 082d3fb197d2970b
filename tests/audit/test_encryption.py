"""
Tests for envelope encryption of audit details.
"""
import base64
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from carebridge.audit.encryption import (
    AuditDecryptionError,
    EnvelopeEncryptedDetails,
    KmsKeyProvider,
    LocalKeyProvider,
    PlaintextDetails,
    build_protectors,
    select_details_protector,
)
from carebridge.errors.types import KeyManagementError

CONTEXT = {
    "audit_id": "a-1",
    "data_classification": "medical_phi",
    "purpose": "audit_event_details",
}

DETAILS = {"document_type": "lab_result", "pages": 3}


class TestEnvelope:

    def test_round_trip(self, key_provider):
        protector = EnvelopeEncryptedDetails(key_provider)
        envelope = protector.protect(DETAILS, CONTEXT)

        assert envelope["encrypted"] is True
        assert envelope["algorithm"] == "AES-256-GCM"
        assert envelope["context"] == CONTEXT
        assert "lab_result" not in str(envelope)
        assert protector.reveal(envelope) == DETAILS

    def test_fresh_data_key_per_event(self, key_provider):
        protector = EnvelopeEncryptedDetails(key_provider)
        first = protector.protect(DETAILS, CONTEXT)
        second = protector.protect(DETAILS, CONTEXT)

        assert first["encrypted_key"] != second["encrypted_key"]
        assert first["data"] != second["data"]

    def test_tampered_ciphertext_fails(self, key_provider):
        protector = EnvelopeEncryptedDetails(key_provider)
        envelope = protector.protect(DETAILS, CONTEXT)
        data = bytearray(base64.b64decode(envelope["data"]))
        data[0] ^= 0x01
        envelope["data"] = base64.b64encode(bytes(data)).decode("ascii")

        with pytest.raises(AuditDecryptionError):
            protector.reveal(envelope)

    def test_changed_context_fails(self, key_provider):
        protector = EnvelopeEncryptedDetails(key_provider)
        envelope = protector.protect(DETAILS, CONTEXT)
        envelope["context"] = {**CONTEXT, "audit_id": "a-2"}

        with pytest.raises(KeyManagementError):
            protector.reveal(envelope)

    def test_unsupported_algorithm(self, key_provider):
        protector = EnvelopeEncryptedDetails(key_provider)
        envelope = protector.protect(DETAILS, CONTEXT)
        envelope["algorithm"] = "ROT13"

        with pytest.raises(AuditDecryptionError):
            protector.reveal(envelope)

    def test_plaintext_passthrough(self, key_provider):
        protector = EnvelopeEncryptedDetails(key_provider)
        assert protector.reveal({"a": 1}) == {"a": 1}


class TestLocalKeyProvider:

    def test_master_key_length_checked(self):
        with pytest.raises(ValueError):
            LocalKeyProvider(b"short")

    def test_other_secret_cannot_unwrap(self, key_provider):
        _, wrapped = key_provider.generate_data_key(CONTEXT)
        other = LocalKeyProvider.from_secret("a-completely-different-master-secret")

        with pytest.raises(KeyManagementError):
            other.decrypt_data_key(wrapped, CONTEXT)


class TestKmsKeyProvider:

    def test_generate_passes_encryption_context(self):
        client = MagicMock()
        client.generate_data_key.return_value = {
            "Plaintext": b"k" * 32,
            "CiphertextBlob": b"wrapped",
        }
        provider = KmsKeyProvider("alias/audit", client=client)

        assert provider.generate_data_key(CONTEXT) == (b"k" * 32, b"wrapped")
        client.generate_data_key.assert_called_once_with(
            KeyId="alias/audit",
            KeySpec="AES_256",
            EncryptionContext=CONTEXT,
        )

    def test_envelope_round_trip_through_kms(self):
        client = MagicMock()
        client.generate_data_key.return_value = {
            "Plaintext": b"k" * 32,
            "CiphertextBlob": b"wrapped",
        }
        client.decrypt.return_value = {"Plaintext": b"k" * 32}
        protector = EnvelopeEncryptedDetails(KmsKeyProvider("alias/audit", client=client))

        envelope = protector.protect(DETAILS, CONTEXT)
        assert protector.reveal(envelope) == DETAILS
        assert client.decrypt.call_args.kwargs["CiphertextBlob"] == b"wrapped"

    def test_client_error_becomes_key_management_error(self):
        client = MagicMock()
        client.generate_data_key.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}},
            "GenerateDataKey",
        )
        provider = KmsKeyProvider("alias/audit", client=client)

        with pytest.raises(KeyManagementError) as excinfo:
            provider.generate_data_key(CONTEXT)
        assert excinfo.value.dependency == "key_management"


class TestProtectorSelection:

    @pytest.mark.parametrize("classification", ["medical_phi", "restricted"])
    def test_sensitive_classifications_encrypted(self, key_provider, classification):
        assert isinstance(select_details_protector(classification, key_provider), EnvelopeEncryptedDetails)

    @pytest.mark.parametrize("classification", ["internal", "confidential", "security_event", "gdpr_compliance"])
    def test_other_classifications_plaintext(self, key_provider, classification):
        assert isinstance(select_details_protector(classification, key_provider), PlaintextDetails)

    def test_encryption_requires_key_provider(self):
        with pytest.raises(ValueError):
            select_details_protector("medical_phi", None)

    def test_without_provider_encrypted_classifications_are_absent(self):
        protectors = build_protectors(None)
        assert "medical_phi" not in protectors
        assert "restricted" not in protectors
        assert isinstance(protectors["internal"], PlaintextDetails)
