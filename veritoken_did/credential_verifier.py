"""
Verifiable Credentials Verifier
================================

Features:
- Validate credential structure
- Verify credential signatures
- Check expiration
- Check revocation status

Signature validity, expiry and revocation are independent: a credential
can be validly signed and expired at the same time.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .credential_issuer import (
    BASE_CREDENTIAL_TYPE,
    credential_to_dict,
    is_expired,
    verify_credential_signature,
)
from .exceptions import MalformedInput
from .timeutil import utc_now

logger = logging.getLogger(__name__)


class VerificationStatus(Enum):
    """Overall credential verification status"""
    VALID = "valid"
    INVALID_SIGNATURE = "invalid_signature"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MALFORMED = "malformed"


@dataclass
class VerificationResult:
    """Result of credential verification"""
    status: VerificationStatus
    credential_id: str
    issuer: str
    subject: str
    is_valid: bool  # signature check only
    is_expired: bool
    is_revoked: bool
    errors: List[str] = field(default_factory=list)
    verified_at: str = ""

    def __post_init__(self):
        if not self.verified_at:
            self.verified_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "credentialId": self.credential_id,
            "issuer": self.issuer,
            "subject": self.subject,
            "isValid": self.is_valid,
            "isExpired": self.is_expired,
            "isRevoked": self.is_revoked,
            "errors": self.errors,
            "verifiedAt": self.verified_at
        }


class RevocationRegistry:
    """Revoked credential ids, per issuer"""

    def __init__(self):
        self._revoked: Dict[str, Set[str]] = {}
        self._reasons: Dict[str, str] = {}

    def revoke(self, credential, reason: str = "") -> None:
        data = credential_to_dict(credential)
        self._revoked.setdefault(data["issuer"], set()).add(data["id"])
        self._reasons[data["id"]] = reason
        logger.info("Revoked credential %s (%s)", data["id"], reason or "no reason given")

    def is_revoked(self, credential) -> bool:
        data = credential_to_dict(credential)
        return data.get("id") in self._revoked.get(data.get("issuer"), set())

    def reason(self, credential_id: str) -> Optional[str]:
        return self._reasons.get(credential_id)

    def export(self) -> Dict[str, List[str]]:
        return {issuer: sorted(ids) for issuer, ids in self._revoked.items()}

    def sync(self, issuer_did: str, revoked_ids: List[str]) -> None:
        """Replace an issuer's revocation list"""
        self._revoked[issuer_did] = set(revoked_ids)

    def __len__(self):
        return sum(len(ids) for ids in self._revoked.values())


class CredentialVerifier:
    """
    Verifies Verifiable Credentials

    Performs the following checks:
    1. Structure validation
    2. Signature verification
    3. Revocation check
    4. Expiration check
    """

    def __init__(self, revocations: Optional[RevocationRegistry] = None):
        self.revocations = revocations if revocations is not None else RevocationRegistry()

    def verify(self, credential, issuer_identity) -> VerificationResult:
        """
        Verify a signed credential against its issuer

        Args:
            credential: SignedCredential or its dict form
            issuer_identity: Identity holding the issuer's public key

        Returns:
            VerificationResult; never raises for an invalid signature
        """
        try:
            data = credential_to_dict(credential)
        except MalformedInput as e:
            return VerificationResult(
                status=VerificationStatus.MALFORMED,
                credential_id="", issuer="", subject="",
                is_valid=False, is_expired=False, is_revoked=False,
                errors=[str(e)]
            )

        structure_valid, errors = self._validate_structure(data)
        subject = data.get("credentialSubject") or {}
        subject_id = subject.get("id", "") if isinstance(subject, dict) else ""

        if not structure_valid:
            return self._create_result(
                VerificationStatus.MALFORMED, data, subject_id,
                False, False, False, errors
            )

        if issuer_identity.id != data["issuer"]:
            errors.append(f"Issuer {data['issuer']} does not match {issuer_identity.id}")
            sig_valid = False
        else:
            sig_valid = verify_credential_signature(data, issuer_identity)
            if not sig_valid:
                errors.append("Signature verification failed")

        try:
            expired = is_expired(data)
        except MalformedInput as e:
            errors.append(str(e))
            return self._create_result(
                VerificationStatus.MALFORMED, data, subject_id,
                sig_valid, False, False, errors
            )
        if expired:
            errors.append("Credential has expired")

        revoked = self.revocations.is_revoked(data)
        if revoked:
            errors.append("Credential has been revoked")

        if not sig_valid:
            status = VerificationStatus.INVALID_SIGNATURE
        elif revoked:
            status = VerificationStatus.REVOKED
        elif expired:
            status = VerificationStatus.EXPIRED
        else:
            status = VerificationStatus.VALID

        if status is not VerificationStatus.VALID:
            logger.warning("Credential %s: %s", data["id"], status.value)

        return self._create_result(status, data, subject_id, sig_valid, expired, revoked, errors)

    # ==================== VALIDATION HELPERS ====================

    def _validate_structure(self, data: Dict[str, Any]) -> Tuple[bool, List[str]]:
        errors = []

        if not data.get("id"):
            errors.append("Missing credential ID")

        if not data.get("type") or BASE_CREDENTIAL_TYPE not in data["type"]:
            errors.append("Invalid or missing credential type")

        if not data.get("issuer"):
            errors.append("Missing issuer")

        if not data.get("issuanceDate"):
            errors.append("Missing issuance date")

        subject = data.get("credentialSubject")
        if not isinstance(subject, dict) or not subject.get("id"):
            errors.append("Missing credential subject")

        if not data.get("proof"):
            errors.append("Missing proof")

        return len(errors) == 0, errors

    def _create_result(
        self,
        status: VerificationStatus,
        data: Dict[str, Any],
        subject_id: str,
        is_valid: bool,
        expired: bool,
        revoked: bool,
        errors: List[str]
    ) -> VerificationResult:
        return VerificationResult(
            status=status,
            credential_id=data.get("id", ""),
            issuer=data.get("issuer", ""),
            subject=subject_id,
            is_valid=is_valid,
            is_expired=expired,
            is_revoked=revoked,
            errors=errors
        )
