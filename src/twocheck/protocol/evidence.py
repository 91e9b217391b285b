# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Evidence store with deterministic, per-type validation.

Every submission is hashed, validated once and stored. Verification is
fixed at submission time: ``verified = confidence > 0.5``.

Validators start at confidence 1.0 and deduct for each problem they find.
A validator that raises is converted into an invalid, zero-confidence
result with the error recorded as an issue.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from ..core.exceptions import EvidenceValidationError, NotFoundError
from ..core.interfaces import Clock, utc_now
from ..core.locks import KeyedLock
from ..core.outbox import Outbox

logger = logging.getLogger(__name__)

VERIFIED_THRESHOLD = 0.5
REQUEST_DEADLINE = timedelta(hours=24)

TRACKING_PATTERNS = {
    "ups": re.compile(r"^1Z[A-Z0-9]{16}$"),
    "fedex": re.compile(r"^[0-9]{12,22}$"),
    "dhl": re.compile(r"^[0-9]{10,11}$"),
    "usps": re.compile(r"^[0-9]{20,22}$"),
}
TRUSTED_TIMESTAMP_SERVICES = {"timestamp.digicert.com", "timestamp.globalsign.com"}
SUPPORTED_SIGNATURE_ALGORITHMS = {"RSA-SHA256", "ECDSA-SHA256", "Ed25519"}
MAX_GPS_ACCURACY_METERS = 100


class EvidenceType(StrEnum):
    """Known evidence kinds. Unknown strings are accepted but never verify."""

    SHIPPING_DOCUMENT = "shipping_document"
    PHOTO_PROOF = "photo_proof"
    VIDEO_PROOF = "video_proof"
    GPS_LOCATION = "gps_location"
    TIMESTAMP_VERIFICATION = "timestamp_verification"
    WITNESS_CONFIRMATION = "witness_confirmation"
    DIGITAL_SIGNATURE = "digital_signature"
    BLOCKCHAIN_PROOF = "blockchain_proof"
    MULTI_SIGNATURE = "multi_signature"
    INSURANCE_CONFIRMATION = "insurance_confirmation"
    # Dispute evidence kinds
    PHOTO = "photo"
    DOCUMENT = "document"
    TRACKING = "tracking"
    TESTIMONY = "testimony"
    SYSTEM_LOG = "system_log"


TYPE_WEIGHTS: dict[str, float] = {
    EvidenceType.DIGITAL_SIGNATURE: 1.0,
    EvidenceType.BLOCKCHAIN_PROOF: 1.0,
    EvidenceType.SHIPPING_DOCUMENT: 0.8,
    EvidenceType.PHOTO_PROOF: 0.7,
    EvidenceType.VIDEO_PROOF: 0.7,
    EvidenceType.GPS_LOCATION: 0.6,
    EvidenceType.WITNESS_CONFIRMATION: 0.5,
    EvidenceType.TIMESTAMP_VERIFICATION: 0.6,
    EvidenceType.MULTI_SIGNATURE: 0.9,
    EvidenceType.INSURANCE_CONFIRMATION: 0.8,
}
DEFAULT_TYPE_WEIGHT = 0.5


def content_hash(data: Any) -> str:
    """SHA-256 of the canonical JSON encoding of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise EvidenceValidationError(f"Unparseable timestamp: {value}") from e


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _is_future(value: datetime, now: datetime) -> bool:
    """True when ``value`` is after ``now``; naive times are read as UTC."""
    return _aware(value) > _aware(now)


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class EvidenceValidation:
    is_valid: bool
    confidence: float
    issues: tuple[str, ...] = ()

    @classmethod
    def from_confidence(cls, confidence: float, issues: list[str]) -> EvidenceValidation:
        confidence = max(0.0, min(1.0, confidence))
        return cls(confidence > VERIFIED_THRESHOLD, confidence, tuple(issues))

    def to_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "confidence": round(self.confidence, 4), "issues": list(self.issues)}


@dataclass(frozen=True)
class Evidence:
    """A stored piece of evidence. Verification never changes after submission."""

    id: str
    transaction_id: str
    type: str
    submitted_by: str
    timestamp: datetime
    hash: str
    data: dict[str, Any]
    verified: bool
    confidence: float
    issues: tuple[str, ...] = ()

    def to_dict(self, include_data: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "type": self.type,
            "submitted_by": self.submitted_by,
            "timestamp": self.timestamp.isoformat(),
            "hash": self.hash,
            "verified": self.verified,
            "confidence": round(self.confidence, 4),
            "issues": list(self.issues),
        }
        if include_data:
            result["data"] = self.data
        return result


@dataclass
class EvidenceRequest:
    transaction_id: str
    required_types: list[str]
    parties: list[str]
    reason: str
    created: datetime
    deadline: datetime
    fulfilled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "required_types": list(self.required_types),
            "parties": list(self.parties),
            "reason": self.reason,
            "created": self.created.isoformat(),
            "deadline": self.deadline.isoformat(),
            "fulfilled": self.fulfilled,
        }


# =============================================================================
# Signature checks
# =============================================================================


def _decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise EvidenceValidationError("Signature material is not valid base64") from e


def _load_public_key(material: str) -> Any:
    if material.strip().startswith("-----BEGIN"):
        return load_pem_public_key(material.encode())
    return Ed25519PublicKey.from_public_bytes(_decode(material))


def verify_signature(algorithm: str, public_key: str, message: str, signature: str) -> bool:
    """Check a base64 signature over ``message``.

    ``public_key`` is PEM, or base64 raw bytes for Ed25519.
    """
    try:
        key = _load_public_key(public_key)
        raw_signature = _decode(signature)
        payload = message.encode()
        if algorithm == "Ed25519" and isinstance(key, Ed25519PublicKey):
            key.verify(raw_signature, payload)
        elif algorithm == "RSA-SHA256" and isinstance(key, rsa.RSAPublicKey):
            key.verify(raw_signature, payload, padding.PKCS1v15(), hashes.SHA256())
        elif algorithm == "ECDSA-SHA256" and isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(raw_signature, payload, ec.ECDSA(hashes.SHA256()))
        else:
            return False
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, EvidenceValidationError):
        return False
    return True


# =============================================================================
# Store
# =============================================================================

Validator = Callable[[str, dict[str, Any], datetime], EvidenceValidation]
RouteChecker = Callable[[str, float, float], bool]


class EvidenceStore:
    """Stores evidence per transaction and tracks open evidence requests."""

    def __init__(
        self,
        outbox: Outbox,
        clock: Clock = utc_now,
        locks: KeyedLock | None = None,
        route_checker: RouteChecker | None = None,
        require_photo_location: bool = True,
    ):
        self.outbox = outbox
        self.clock = clock
        self.locks = locks or KeyedLock()
        self.route_checker = route_checker
        self.require_photo_location = require_photo_location
        self._evidence: dict[str, list[Evidence]] = {}
        self._requests: dict[str, EvidenceRequest] = {}
        self._validators: dict[str, Validator] = {
            EvidenceType.SHIPPING_DOCUMENT: self._validate_shipping_document,
            EvidenceType.PHOTO_PROOF: self._validate_photo_proof,
            EvidenceType.GPS_LOCATION: self._validate_gps_location,
            EvidenceType.TIMESTAMP_VERIFICATION: self._validate_timestamp,
            EvidenceType.WITNESS_CONFIRMATION: self._validate_witness,
            EvidenceType.DIGITAL_SIGNATURE: self._validate_digital_signature,
            EvidenceType.PHOTO: self._validate_photo_proof,
            EvidenceType.DOCUMENT: self._validate_document,
            EvidenceType.TRACKING: self._validate_tracking,
            EvidenceType.TESTIMONY: self._validate_testimony,
            EvidenceType.SYSTEM_LOG: self._validate_system_log,
        }

    @staticmethod
    def _key(transaction_id: str) -> str:
        return f"evidence:{transaction_id}"

    def register_validator(self, evidence_type: str, validator: Validator) -> None:
        self._validators[str(evidence_type)] = validator

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit_evidence(
        self,
        transaction_id: str,
        evidence_type: str,
        data: dict[str, Any],
        submitted_by: str,
    ) -> Evidence:
        """Validate, store and announce one piece of evidence."""
        evidence_type = str(evidence_type)
        data = dict(data or {})
        with self.locks.hold(self._key(transaction_id)):
            validation = self.validate(transaction_id, evidence_type, data)
            evidence = Evidence(
                id=uuid.uuid4().hex,
                transaction_id=transaction_id,
                type=evidence_type,
                submitted_by=submitted_by,
                timestamp=self.clock(),
                hash=content_hash(data),
                data=data,
                verified=validation.is_valid,
                confidence=validation.confidence,
                issues=validation.issues,
            )
            self._evidence.setdefault(transaction_id, []).append(evidence)
            fulfilled = self._check_fulfillment(transaction_id)

        logger.info(
            f"Evidence {evidence.id} ({evidence_type}) for {transaction_id}: "
            f"verified={evidence.verified} confidence={evidence.confidence:.2f}"
        )
        self.outbox.publish(
            "evidence.submitted",
            {
                "transaction_id": transaction_id,
                "evidence_id": evidence.id,
                "type": evidence_type,
                "verified": evidence.verified,
                "confidence": evidence.confidence,
            },
        )
        if fulfilled is not None:
            self._announce_fulfilled(fulfilled)
        return evidence

    def validate(self, transaction_id: str, evidence_type: str, data: dict[str, Any]) -> EvidenceValidation:
        """Run the validator for ``evidence_type``; failures become zero confidence."""
        validator = self._validators.get(str(evidence_type))
        if validator is None:
            return EvidenceValidation(False, 0.0, ("No validation rule for evidence type",))
        try:
            return validator(transaction_id, data, self.clock())
        except Exception as e:
            logger.warning(f"Validator for {evidence_type} failed on {transaction_id}: {e}")
            return EvidenceValidation(False, 0.0, (f"Validation error: {e}",))

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def request_evidence(
        self,
        transaction_id: str,
        required_types: list[str],
        parties: list[str],
        reason: str,
    ) -> EvidenceRequest:
        """Open (or replace) the evidence request for a transaction."""
        now = self.clock()
        request = EvidenceRequest(
            transaction_id=transaction_id,
            required_types=[str(t) for t in required_types],
            parties=list(parties),
            reason=reason,
            created=now,
            deadline=now + REQUEST_DEADLINE,
        )
        with self.locks.hold(self._key(transaction_id)):
            self._requests[transaction_id] = request
            fulfilled = self._check_fulfillment(transaction_id)

        self.outbox.publish("evidence.requested", request.to_dict())
        if fulfilled is not None:
            self._announce_fulfilled(fulfilled)
        return request

    def check_request_fulfillment(self, transaction_id: str) -> bool:
        """Close the open request if verified evidence now covers it."""
        with self.locks.hold(self._key(transaction_id)):
            fulfilled = self._check_fulfillment(transaction_id)
        if fulfilled is None:
            return False
        self._announce_fulfilled(fulfilled)
        return True

    def _check_fulfillment(self, transaction_id: str) -> EvidenceRequest | None:
        request = self._requests.get(transaction_id)
        if request is None:
            return None
        verified_types = {e.type for e in self._evidence.get(transaction_id, []) if e.verified}
        if not all(t in verified_types for t in request.required_types):
            return None
        request.fulfilled = True
        del self._requests[transaction_id]
        return request

    def _announce_fulfilled(self, request: EvidenceRequest) -> None:
        logger.info(f"Evidence request fulfilled for {request.transaction_id}")
        self.outbox.publish(
            "evidence.request_fulfilled",
            {
                "transaction_id": request.transaction_id,
                "request": request.to_dict(),
                "evidence_ids": [e.id for e in self.get_verified_evidence(request.transaction_id)],
            },
        )

    def get_request(self, transaction_id: str) -> EvidenceRequest | None:
        return self._requests.get(transaction_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_evidence(self, transaction_id: str) -> list[Evidence]:
        return list(self._evidence.get(transaction_id, []))

    def get_verified_evidence(self, transaction_id: str) -> list[Evidence]:
        return [e for e in self._evidence.get(transaction_id, []) if e.verified]

    def get_evidence_by_id(self, evidence_id: str) -> Evidence:
        for records in self._evidence.values():
            for evidence in records:
                if evidence.id == evidence_id:
                    return evidence
        raise NotFoundError("Evidence", evidence_id)

    def generate_report(self, transaction_id: str) -> dict[str, Any]:
        evidence = self.get_evidence(transaction_id)
        verified = [e for e in evidence if e.verified]
        return {
            "transaction_id": transaction_id,
            "total_evidence": len(evidence),
            "verified_evidence": len(verified),
            "evidence_types": sorted({e.type for e in evidence}),
            "confidence": round(self.overall_confidence(evidence), 4),
            "summary": [e.to_dict() for e in evidence],
        }

    @staticmethod
    def overall_confidence(evidence: list[Evidence]) -> float:
        """Verified share of the evidence, scaled by the mean weight of verified types."""
        if not evidence:
            return 0.0
        verified = [e for e in evidence if e.verified]
        if not verified:
            return 0.0
        base = len(verified) / len(evidence)
        mean_weight = sum(TYPE_WEIGHTS.get(e.type, DEFAULT_TYPE_WEIGHT) for e in verified) / len(verified)
        return base * mean_weight

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------

    def _validate_shipping_document(self, transaction_id: str, doc: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0

        for name in ("tracking_number", "carrier", "ship_date", "recipient", "sender"):
            if not doc.get(name):
                issues.append(f"Missing required field: {name}")
                confidence -= 0.2

        tracking = doc.get("tracking_number")
        if tracking and not self.is_valid_tracking_number(str(tracking), str(doc.get("carrier") or "")):
            issues.append("Invalid tracking number format")
            confidence -= 0.3

        ship_date = _parse_time(doc.get("ship_date"))
        if ship_date is not None and _is_future(ship_date, now):
            issues.append("Ship date is in the future")
            confidence -= 0.5

        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_photo_proof(self, transaction_id: str, photo: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0

        metadata = photo.get("metadata")
        if not metadata:
            issues.append("Missing photo metadata")
            confidence -= 0.3
        else:
            if not metadata.get("timestamp"):
                issues.append("Missing timestamp in metadata")
                confidence -= 0.2
            if not metadata.get("location") and self.require_photo_location:
                issues.append("Missing GPS location in metadata")
                confidence -= 0.2

        if not photo.get("hash") or photo["hash"] != content_hash(photo.get("image_data")):
            issues.append("Image hash mismatch")
            confidence -= 0.5

        ai_confidence = (photo.get("ai_validation") or {}).get("confidence")
        if ai_confidence is not None and ai_confidence < 0.7:
            issues.append("Low AI confidence in image authenticity")
            confidence *= ai_confidence

        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_gps_location(self, transaction_id: str, location: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0

        latitude = location.get("latitude")
        longitude = location.get("longitude")
        if not self.is_valid_coordinate(latitude, longitude):
            issues.append("Invalid GPS coordinates")
            confidence = 0.0

        timestamp = _parse_time(location.get("timestamp"))
        if timestamp is not None and _is_future(timestamp, now):
            issues.append("GPS timestamp is in the future")
            confidence -= 0.5

        accuracy = location.get("accuracy")
        if accuracy and accuracy > MAX_GPS_ACCURACY_METERS:
            issues.append(f"GPS accuracy too low (>{MAX_GPS_ACCURACY_METERS}m)")
            confidence -= 0.3

        if confidence > 0 and self.route_checker is not None:
            if not self.route_checker(transaction_id, float(latitude), float(longitude)):
                issues.append("Location inconsistent with transaction route")
                confidence -= 0.4

        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_timestamp(self, transaction_id: str, stamp: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0

        if stamp.get("service") not in TRUSTED_TIMESTAMP_SERVICES:
            issues.append("Untrusted timestamp service")
            confidence -= 0.5

        if not stamp.get("signature"):
            issues.append("Invalid timestamp signature")
            confidence -= 0.7

        time = _parse_time(stamp.get("time"))
        if time is not None and _is_future(time, now):
            issues.append("Timestamp is in the future")
            confidence = 0.0

        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_witness(self, transaction_id: str, witness: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0

        identity = witness.get("identity") or {}
        if not identity.get("verified"):
            issues.append("Witness identity not verified")
            confidence -= 0.4

        if not witness.get("relationship") or witness["relationship"] == "unknown":
            issues.append("Unknown witness relationship")
            confidence -= 0.3

        signature = witness.get("signature")
        public_key = identity.get("public_key")
        signed_ok = bool(signature and public_key)
        if signed_ok and witness.get("statement"):
            signed_ok = verify_signature("Ed25519", public_key, witness["statement"], signature)
        if not signed_ok:
            issues.append("Invalid witness signature")
            confidence -= 0.5

        credibility = witness.get("credibility_score")
        if credibility is not None and credibility < 0.7:
            issues.append("Low witness credibility score")
            confidence *= credibility

        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_digital_signature(self, transaction_id: str, sig: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0

        algorithm = sig.get("algorithm")
        if algorithm not in SUPPORTED_SIGNATURE_ALGORITHMS:
            issues.append("Unsupported signature algorithm")
            confidence = 0.0

        if not sig.get("certificate_chain"):
            issues.append("Invalid certificate chain")
            confidence -= 0.7

        if not (sig.get("value") and sig.get("public_key") and sig.get("data")) or not verify_signature(
            str(algorithm), sig["public_key"], str(sig["data"]), sig["value"]
        ):
            issues.append("Signature verification failed")
            confidence = 0.0

        valid_until = _parse_time((sig.get("certificate") or {}).get("valid_until"))
        if valid_until is None or _is_future(now, valid_until):
            issues.append("Certificate expired")
            confidence -= 0.5

        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_document(self, transaction_id: str, doc: dict[str, Any], now: datetime) -> EvidenceValidation:
        issues: list[str] = []
        confidence = 1.0
        if not (doc.get("document_id") or doc.get("content") or doc.get("url")):
            issues.append("Document reference missing")
            confidence -= 0.6
        if doc.get("hash") and doc.get("content") is not None and doc["hash"] != content_hash(doc["content"]):
            issues.append("Document hash mismatch")
            confidence -= 0.5
        return EvidenceValidation.from_confidence(confidence, issues)

    def _validate_tracking(self, transaction_id: str, data: dict[str, Any], now: datetime) -> EvidenceValidation:
        tracking = data.get("tracking_number")
        if not tracking:
            return EvidenceValidation.from_confidence(0.0, ["Tracking number missing"])
        carrier = str(data.get("carrier") or "")
        if carrier and not self.is_valid_tracking_number(str(tracking), carrier):
            return EvidenceValidation.from_confidence(0.4, ["Invalid tracking number format"])
        return EvidenceValidation.from_confidence(1.0, [])

    def _validate_testimony(self, transaction_id: str, data: dict[str, Any], now: datetime) -> EvidenceValidation:
        if not (data.get("statement") or data.get("description")):
            return EvidenceValidation.from_confidence(0.0, ["Empty testimony"])
        return EvidenceValidation.from_confidence(0.6, [])

    def _validate_system_log(self, transaction_id: str, data: dict[str, Any], now: datetime) -> EvidenceValidation:
        if not (data.get("log_reference") or data.get("log_id")):
            return EvidenceValidation.from_confidence(0.0, ["Log reference missing"])
        return EvidenceValidation.from_confidence(1.0, [])

    @staticmethod
    def is_valid_tracking_number(tracking_number: str, carrier: str) -> bool:
        pattern = TRACKING_PATTERNS.get(carrier.lower())
        return bool(pattern.match(tracking_number)) if pattern else True

    @staticmethod
    def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
        if not isinstance(latitude, int | float) or not isinstance(longitude, int | float):
            return False
        return -90 <= latitude <= 90 and -180 <= longitude <= 180
