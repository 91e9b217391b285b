"""Tests for twocheck.protocol.evidence module."""

from __future__ import annotations

import base64
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from twocheck.core.exceptions import NotFoundError
from twocheck.protocol.evidence import EvidenceStore, content_hash, verify_signature

PAST = "2026-10-13T09:00:00+00:00"
FUTURE = "2026-10-20T09:00:00+00:00"
UPS = "1Z999AA10123456784"


@pytest.fixture
def store(outbox, clock, locks):
    return EvidenceStore(outbox, clock, locks)


@pytest.fixture(scope="module")
def ed25519_key():
    return Ed25519PrivateKey.generate()


def b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode()


def raw_public(key) -> str:
    return b64(key.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw))


def pem_public(key) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


def shipping_doc(**overrides):
    doc = {
        "tracking_number": UPS,
        "carrier": "UPS",
        "ship_date": PAST,
        "recipient": "globex",
        "sender": "acme",
    }
    doc.update(overrides)
    return doc


def photo(**overrides):
    image = "aGVsbG8="
    data = {
        "image_data": image,
        "hash": content_hash(image),
        "metadata": {"timestamp": PAST, "location": {"latitude": 48.85, "longitude": 2.35}},
    }
    data.update(overrides)
    return data


# ============================================================================
# Dispute evidence kinds
# ============================================================================


class TestSimpleValidators:
    """Tests for tracking, testimony, system_log and document evidence."""

    @pytest.mark.parametrize(
        "data,confidence",
        [
            ({"tracking_number": UPS, "carrier": "UPS"}, 1.0),
            ({"tracking_number": "ABC", "carrier": "UPS"}, 0.4),
            ({"tracking_number": "ANY-FORMAT", "carrier": "Acme Couriers"}, 1.0),
            ({"tracking_number": "123"}, 1.0),
            ({}, 0.0),
        ],
    )
    def test_tracking(self, store, data, confidence):
        evidence = store.submit_evidence("TX-1", "tracking", data, "globex")
        assert evidence.confidence == pytest.approx(confidence)
        assert evidence.verified is (confidence > 0.5)

    def test_testimony(self, store):
        assert store.submit_evidence("TX-1", "testimony", {"statement": "Never arrived"}, "g").confidence == 0.6
        assert store.submit_evidence("TX-1", "testimony", {}, "g").verified is False

    def test_system_log(self, store):
        assert store.submit_evidence("TX-1", "system_log", {"log_id": "L1"}, "g").verified
        assert not store.submit_evidence("TX-1", "system_log", {"note": "x"}, "g").verified

    def test_document_without_reference(self, store):
        evidence = store.submit_evidence("TX-1", "document", {"title": "Invoice"}, "g")
        assert evidence.confidence == pytest.approx(0.4)
        assert "Document reference missing" in evidence.issues

    def test_document_hash_mismatch(self, store):
        data = {"content": "invoice body", "hash": "0" * 64}
        assert store.submit_evidence("TX-1", "document", data, "g").confidence == pytest.approx(0.5)

    def test_document_matching_hash(self, store):
        data = {"content": "invoice body", "hash": content_hash("invoice body")}
        assert store.submit_evidence("TX-1", "document", data, "g").confidence == 1.0


# ============================================================================
# Custody evidence kinds
# ============================================================================


class TestShippingDocument:
    """Tests for shipping document validation."""

    def test_complete(self, store):
        assert store.validate("TX-1", "shipping_document", shipping_doc()).confidence == 1.0

    def test_missing_field(self, store):
        result = store.validate("TX-1", "shipping_document", shipping_doc(sender=""))
        assert result.confidence == pytest.approx(0.8)
        assert result.issues == ("Missing required field: sender",)

    def test_bad_tracking_format(self, store):
        result = store.validate("TX-1", "shipping_document", shipping_doc(tracking_number="1Zshort"))
        assert result.confidence == pytest.approx(0.7)

    def test_future_ship_date(self, store):
        result = store.validate("TX-1", "shipping_document", shipping_doc(ship_date=FUTURE))
        assert result.confidence == pytest.approx(0.5)
        assert not result.is_valid

    def test_naive_ship_date_read_as_utc(self, store):
        assert store.validate("TX-1", "shipping_document", shipping_doc(ship_date="2026-10-13T09:00:00")).is_valid

    def test_unparseable_date_is_zero(self, store):
        """A validator error becomes an invalid zero-confidence result."""
        result = store.validate("TX-1", "shipping_document", shipping_doc(ship_date="last tuesday"))
        assert result.confidence == 0.0
        assert result.issues[0].startswith("Validation error:")


class TestPhotoProof:
    """Tests for photo validation."""

    def test_complete(self, store):
        assert store.validate("TX-1", "photo_proof", photo()).confidence == 1.0

    def test_missing_metadata(self, store):
        assert store.validate("TX-1", "photo_proof", photo(metadata=None)).confidence == pytest.approx(0.7)

    def test_missing_location(self, store):
        result = store.validate("TX-1", "photo_proof", photo(metadata={"timestamp": PAST}))
        assert result.confidence == pytest.approx(0.8)

    def test_location_optional(self, outbox, clock):
        store = EvidenceStore(outbox, clock, require_photo_location=False)
        assert store.validate("TX-1", "photo", photo(metadata={"timestamp": PAST})).confidence == 1.0

    def test_hash_mismatch(self, store):
        result = store.validate("TX-1", "photo_proof", photo(hash="deadbeef"))
        assert result.confidence == pytest.approx(0.5)
        assert "Image hash mismatch" in result.issues

    def test_low_ai_confidence(self, store):
        result = store.validate("TX-1", "photo_proof", photo(ai_validation={"confidence": 0.6}))
        assert result.confidence == pytest.approx(0.6)

    def test_high_ai_confidence_ignored(self, store):
        assert store.validate("TX-1", "photo_proof", photo(ai_validation={"confidence": 0.9})).confidence == 1.0


class TestGpsLocation:
    """Tests for GPS validation."""

    def test_valid(self, store):
        data = {"latitude": 48.85, "longitude": 2.35, "timestamp": PAST, "accuracy": 10}
        assert store.validate("TX-1", "gps_location", data).confidence == 1.0

    @pytest.mark.parametrize(
        "latitude,longitude",
        [(91, 0), (0, 181), ("48.85", 2.35), (None, None)],
    )
    def test_invalid_coordinates(self, store, latitude, longitude):
        data = {"latitude": latitude, "longitude": longitude}
        assert store.validate("TX-1", "gps_location", data).confidence == 0.0

    def test_poor_accuracy_and_future(self, store):
        data = {"latitude": 1.0, "longitude": 1.0, "timestamp": FUTURE, "accuracy": 250}
        assert store.validate("TX-1", "gps_location", data).confidence == pytest.approx(0.2)

    def test_route_checker(self, outbox, clock):
        calls = []

        def off_route(transaction_id, latitude, longitude):
            calls.append((transaction_id, latitude, longitude))
            return False

        store = EvidenceStore(outbox, clock, route_checker=off_route)
        result = store.validate("TX-1", "gps_location", {"latitude": 10, "longitude": 20})
        assert result.confidence == pytest.approx(0.6)
        assert calls == [("TX-1", 10.0, 20.0)]


class TestTimestampVerification:
    """Tests for timestamp authority validation."""

    def test_trusted(self, store):
        data = {"service": "timestamp.digicert.com", "signature": "sig", "time": PAST}
        assert store.validate("TX-1", "timestamp_verification", data).confidence == 1.0

    def test_untrusted_service(self, store):
        data = {"service": "time.example.com", "signature": "sig", "time": PAST}
        result = store.validate("TX-1", "timestamp_verification", data)
        assert result.confidence == pytest.approx(0.5)
        assert not result.is_valid

    def test_missing_signature(self, store):
        data = {"service": "timestamp.globalsign.com", "time": PAST}
        assert store.validate("TX-1", "timestamp_verification", data).confidence == pytest.approx(0.3)

    def test_future_time(self, store):
        data = {"service": "timestamp.digicert.com", "signature": "sig", "time": FUTURE}
        assert store.validate("TX-1", "timestamp_verification", data).confidence == 0.0


class TestWitnessConfirmation:
    """Tests for witness statements."""

    def witness(self, key, **overrides):
        statement = "I saw the crate delivered to dock 4"
        data = {
            "identity": {"verified": True, "public_key": raw_public(key)},
            "relationship": "courier",
            "statement": statement,
            "signature": b64(key.sign(statement.encode())),
        }
        data.update(overrides)
        return data

    def test_signed_statement(self, store, ed25519_key):
        assert store.validate("TX-1", "witness_confirmation", self.witness(ed25519_key)).confidence == 1.0

    def test_tampered_statement(self, store, ed25519_key):
        data = self.witness(ed25519_key, statement="I saw nothing")
        result = store.validate("TX-1", "witness_confirmation", data)
        assert result.confidence == pytest.approx(0.5)
        assert "Invalid witness signature" in result.issues

    def test_unverified_unknown_witness(self, store, ed25519_key):
        data = self.witness(ed25519_key, identity={"public_key": raw_public(ed25519_key)}, relationship="unknown")
        assert store.validate("TX-1", "witness_confirmation", data).confidence == pytest.approx(0.3)

    def test_low_credibility(self, store, ed25519_key):
        data = self.witness(ed25519_key, credibility_score=0.6)
        assert store.validate("TX-1", "witness_confirmation", data).confidence == pytest.approx(0.6)


class TestDigitalSignature:
    """Tests for signed payloads across the supported algorithms."""

    MESSAGE = "TX-1|acme|globex|SKU-1"

    def payload(self, algorithm, public_key, signature, **overrides):
        data = {
            "algorithm": algorithm,
            "public_key": public_key,
            "value": b64(signature),
            "data": self.MESSAGE,
            "certificate_chain": ["root", "intermediate"],
            "certificate": {"valid_until": "2027-10-14T00:00:00+00:00"},
        }
        data.update(overrides)
        return data

    def test_ed25519(self, store, ed25519_key):
        data = self.payload("Ed25519", raw_public(ed25519_key), ed25519_key.sign(self.MESSAGE.encode()))
        assert store.validate("TX-1", "digital_signature", data).confidence == 1.0

    def test_ed25519_pem(self, store, ed25519_key):
        data = self.payload("Ed25519", pem_public(ed25519_key), ed25519_key.sign(self.MESSAGE.encode()))
        assert store.validate("TX-1", "digital_signature", data).is_valid

    def test_rsa(self, store):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        signature = key.sign(self.MESSAGE.encode(), padding.PKCS1v15(), hashes.SHA256())
        data = self.payload("RSA-SHA256", pem_public(key), signature)
        assert store.validate("TX-1", "digital_signature", data).confidence == 1.0

    def test_ecdsa(self, store):
        key = ec.generate_private_key(ec.SECP256R1())
        signature = key.sign(self.MESSAGE.encode(), ec.ECDSA(hashes.SHA256()))
        data = self.payload("ECDSA-SHA256", pem_public(key), signature)
        assert store.validate("TX-1", "digital_signature", data).confidence == 1.0

    def test_wrong_data(self, store, ed25519_key):
        data = self.payload("Ed25519", raw_public(ed25519_key), ed25519_key.sign(b"something else"))
        result = store.validate("TX-1", "digital_signature", data)
        assert result.confidence == 0.0
        assert "Signature verification failed" in result.issues

    def test_unsupported_algorithm(self, store, ed25519_key):
        data = self.payload("MD5", raw_public(ed25519_key), ed25519_key.sign(self.MESSAGE.encode()))
        assert store.validate("TX-1", "digital_signature", data).confidence == 0.0

    def test_missing_chain(self, store, ed25519_key):
        data = self.payload(
            "Ed25519", raw_public(ed25519_key), ed25519_key.sign(self.MESSAGE.encode()), certificate_chain=[]
        )
        assert store.validate("TX-1", "digital_signature", data).confidence == pytest.approx(0.3)

    def test_expired_certificate(self, store, ed25519_key):
        data = self.payload(
            "Ed25519",
            raw_public(ed25519_key),
            ed25519_key.sign(self.MESSAGE.encode()),
            certificate={"valid_until": PAST},
        )
        result = store.validate("TX-1", "digital_signature", data)
        assert result.confidence == pytest.approx(0.5)
        assert "Certificate expired" in result.issues


class TestVerifySignature:
    """Tests for the raw signature helper."""

    def test_garbage_inputs(self, ed25519_key):
        assert verify_signature("Ed25519", "not base64!", "m", "also not") is False
        assert verify_signature("Ed25519", raw_public(ed25519_key), "m", b64(b"short")) is False

    def test_algorithm_key_mismatch(self, ed25519_key):
        signature = b64(ed25519_key.sign(b"m"))
        assert verify_signature("RSA-SHA256", raw_public(ed25519_key), "m", signature) is False


# ============================================================================
# Store behaviour
# ============================================================================


class TestStore:
    """Tests for submission, queries and reports."""

    def test_unknown_type(self, store):
        evidence = store.submit_evidence("TX-1", "carrier_pigeon", {"note": "x"}, "acme")
        assert evidence.verified is False
        assert evidence.confidence == 0.0
        assert evidence.issues == ("No validation rule for evidence type",)

    def test_stored_with_hash(self, store, clock, outbox):
        data = {"statement": "ok"}
        evidence = store.submit_evidence("TX-1", "testimony", data, "acme")
        assert evidence.hash == content_hash(data)
        assert evidence.timestamp == clock.now
        assert store.get_evidence_by_id(evidence.id) == evidence
        assert outbox.events("evidence.submitted")[-1].payload["evidence_id"] == evidence.id

    def test_unknown_evidence_id(self, store):
        with pytest.raises(NotFoundError):
            store.get_evidence_by_id("nope")

    def test_content_hash_ignores_key_order(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_register_validator(self, store):
        from twocheck.protocol.evidence import EvidenceValidation

        store.register_validator("video_proof", lambda tx, data, now: EvidenceValidation(True, 0.9))
        assert store.submit_evidence("TX-1", "video_proof", {}, "acme").verified

    def test_overall_confidence(self, store):
        store.submit_evidence("TX-1", "shipping_document", shipping_doc(), "acme")
        store.submit_evidence("TX-1", "photo_proof", photo(), "acme")
        store.submit_evidence("TX-1", "tracking", {}, "acme")
        report = store.generate_report("TX-1")
        assert report["total_evidence"] == 3
        assert report["verified_evidence"] == 2
        assert report["confidence"] == pytest.approx(2 / 3 * 0.75, abs=1e-4)
        assert report["evidence_types"] == ["photo_proof", "shipping_document", "tracking"]

    def test_overall_confidence_empty(self, store):
        assert store.overall_confidence([]) == 0.0
        assert store.generate_report("TX-9")["confidence"] == 0.0


class TestRequests:
    """Tests for evidence requests."""

    def test_request_then_fulfil(self, store, outbox):
        store.request_evidence("TX-1", ["tracking"], ["globex"], "dispute")
        assert store.get_request("TX-1") is not None
        assert store.check_request_fulfillment("TX-1") is False

        store.submit_evidence("TX-1", "tracking", {"tracking_number": UPS, "carrier": "UPS"}, "acme")
        assert store.get_request("TX-1") is None
        fulfilled = outbox.events("evidence.request_fulfilled")
        assert len(fulfilled) == 1
        assert fulfilled[0].payload["request"]["fulfilled"] is True

    def test_unverified_evidence_does_not_fulfil(self, store):
        store.request_evidence("TX-1", ["tracking"], ["globex"], "dispute")
        store.submit_evidence("TX-1", "tracking", {"tracking_number": "bad", "carrier": "UPS"}, "acme")
        assert store.get_request("TX-1") is not None

    def test_already_covered_request_fulfils_immediately(self, store, outbox):
        store.submit_evidence("TX-1", "system_log", {"log_id": "L-1"}, "acme")
        store.request_evidence("TX-1", ["system_log"], ["acme"], "audit")
        assert store.get_request("TX-1") is None
        assert len(outbox.events("evidence.request_fulfilled")) == 1

    def test_deadline_is_24_hours(self, store, clock):
        request = store.request_evidence("TX-1", ["photo"], ["acme"], "audit")
        assert request.deadline == clock.now + timedelta(hours=24)
