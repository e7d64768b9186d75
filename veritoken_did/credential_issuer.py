"""
Verifiable Credentials Issuer
=============================

Builds, signs and verifies W3C Verifiable Credentials for the VeriToken
marketplace (merchant verification, customer KYC, product authenticity,
transaction attestation).

Lifecycle: VerifiableCredential (unsigned, editable) -> sign() ->
SignedCredential (immutable). Editing a signed credential means
to_unsigned() and a fresh sign().

Reference: https://www.w3.org/TR/vc-data-model/
"""

import copy
import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .config import settings
from .exceptions import InvalidClaims, MalformedInput, MissingClaim, SignatureMismatch
from .key_manager import ED25519_SIGNATURE_TYPE, canonical_json
from .timeutil import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

BASE_CREDENTIAL_TYPE = "VerifiableCredential"


class CredentialType(Enum):
    """Marketplace credential types"""
    MERCHANT = "MerchantVerification"
    CUSTOMER = "CustomerVerification"
    PRODUCT = "ProductAuthenticity"
    TRANSACTION = "TransactionAttestation"


# Short names accepted by the service layer
CREDENTIAL_TYPE_ALIASES = {
    "merchant": CredentialType.MERCHANT,
    "customer": CredentialType.CUSTOMER,
    "product": CredentialType.PRODUCT,
    "transaction": CredentialType.TRANSACTION,
}


def credential_contexts() -> List[str]:
    return [
        "https://www.w3.org/2018/credentials/v1",
        settings.CREDENTIAL_CONTEXT,
    ]


def _check_claims(claims: Mapping[str, Any]):
    """Claims must have string keys and canonically serializable, non-null values."""
    for key, value in claims.items():
        if not isinstance(key, str) or not key:
            raise InvalidClaims(f"Claim names must be non-empty strings, got {key!r}")
        if key == "id":
            raise InvalidClaims("'id' is reserved for the credential subject")
        if value is None:
            raise InvalidClaims(f"Claim '{key}' has no value")
        try:
            canonical_json(value)
        except MalformedInput as e:
            raise InvalidClaims(f"Claim '{key}' cannot be serialized: {e}") from e


def _expiration(value: Union[str, datetime, None]) -> Optional[str]:
    if value is None:
        return None
    return to_iso(parse_iso(value))


def _project(body: Dict[str, Any], attributes_to_reveal: Iterable[str]) -> Dict[str, Any]:
    subject = body["credentialSubject"]
    disclosed = copy.deepcopy(body)
    disclosed.pop("proof", None)
    disclosed["credentialSubject"] = {"id": subject.get("id")}
    for attr in attributes_to_reveal:
        if attr != "id" and attr in subject:
            disclosed["credentialSubject"][attr] = copy.deepcopy(subject[attr])
    return disclosed


def credential_to_dict(credential) -> Dict[str, Any]:
    if isinstance(credential, (SignedCredential, VerifiableCredential)):
        return credential.to_dict()
    if isinstance(credential, Mapping):
        return copy.deepcopy(dict(credential))
    raise MalformedInput(f"Not a credential: {type(credential).__name__}")


@dataclass
class VerifiableCredential:
    """
    Unsigned W3C Verifiable Credential

    `credential_type` is the specific type; "VerifiableCredential" is
    always prepended in the serialized form.
    """
    issuer: str
    subject: str
    credential_type: str
    id: str = ""
    issuance_date: str = ""
    expiration_date: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    credential_status: Optional[Dict[str, Any]] = None
    context: List[str] = field(default_factory=credential_contexts)

    def __post_init__(self):
        if not self.id:
            self.id = f"urn:uuid:{uuid.uuid4()}"
        if not self.issuance_date:
            self.issuance_date = utc_now()
        self.expiration_date = _expiration(self.expiration_date)
        _check_claims(self.claims)
        self.claims = copy.deepcopy(self.claims)
        if self.credential_status is None:
            self.credential_status = {
                "id": f"{self.id}#status",
                "type": "RevocationList2020Status",
                "revocationListIndex": secrets.randbelow(1_000_000),
                "revocationListCredential": f"{self.issuer}/revocation-list",
            }

    @property
    def type(self) -> List[str]:
        return [BASE_CREDENTIAL_TYPE, self.credential_type]

    def add_claim(self, name: str, value: Any) -> "VerifiableCredential":
        _check_claims({name: value})
        self.claims[name] = copy.deepcopy(value)
        return self

    def set_expiration_date(self, date: Union[str, datetime]) -> "VerifiableCredential":
        self.expiration_date = _expiration(date)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """The credential body, exactly as it is signed"""
        vc = {
            "@context": list(self.context),
            "id": self.id,
            "type": self.type,
            "issuer": self.issuer,
            "issuanceDate": self.issuance_date,
            "credentialSubject": {"id": self.subject, **copy.deepcopy(self.claims)},
            "credentialStatus": copy.deepcopy(self.credential_status),
        }
        if self.expiration_date:
            vc["expirationDate"] = self.expiration_date
        return vc

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def sign(self, issuer_identity) -> "SignedCredential":
        """
        Sign the credential with the issuer's private key

        Args:
            issuer_identity: Identity whose id is this credential's issuer

        Returns:
            SignedCredential carrying an Ed25519Signature2020 proof
        """
        if issuer_identity.id != self.issuer:
            raise SignatureMismatch(
                f"Credential issuer is {self.issuer}, signing identity is {issuer_identity.id}"
            )

        body = self.to_dict()
        proof = {
            "type": ED25519_SIGNATURE_TYPE,
            "created": utc_now(),
            "verificationMethod": f"{self.issuer}#key-1",
            "proofPurpose": "assertionMethod",
        }
        proof["proofValue"] = issuer_identity.sign(body)
        return SignedCredential(body, proof)

    def create_selective_disclosure(self, attributes_to_reveal: Iterable[str]) -> Dict[str, Any]:
        """Unsigned projection revealing only the requested claims."""
        return _project(self.to_dict(), attributes_to_reveal)

    @staticmethod
    def verify(credential, issuer_identity) -> bool:
        return verify_credential_signature(credential, issuer_identity)

    @staticmethod
    def is_expired(credential) -> bool:
        return is_expired(credential)


class SignedCredential:
    """
    Immutable signed credential

    Stores its JSON form; every accessor returns a fresh copy, so changes
    to returned values never reach the credential itself.
    """
    __slots__ = ("_body", "_proof")

    def __init__(self, body: Dict[str, Any], proof: Dict[str, Any]):
        object.__setattr__(self, "_body", json.dumps(body))
        object.__setattr__(self, "_proof", json.dumps(proof))

    def __setattr__(self, name, value):
        raise AttributeError("SignedCredential is immutable; use to_unsigned() and sign again")

    def __delattr__(self, name):
        raise AttributeError("SignedCredential is immutable")

    def __eq__(self, other):
        if not isinstance(other, SignedCredential):
            return NotImplemented
        return self._body == other._body and self._proof == other._proof

    def __hash__(self):
        return hash((self._body, self._proof))

    def __repr__(self):
        return f"SignedCredential(id={self.id!r}, type={self.type!r}, issuer={self.issuer!r})"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SignedCredential":
        """Rebuild from the dict form (e.g. a stored credential file)"""
        if not isinstance(data, Mapping):
            raise MalformedInput("Credential must be an object")
        body = copy.deepcopy(dict(data))
        proof = body.pop("proof", None)
        if not isinstance(proof, dict):
            raise MalformedInput("Credential has no proof")
        for name in ("id", "issuer", "credentialSubject"):
            if name not in body:
                raise MalformedInput(f"Credential is missing '{name}'")
        if not isinstance(body["credentialSubject"], dict):
            raise MalformedInput("credentialSubject must be an object")
        return cls(body, proof)

    def body(self) -> Dict[str, Any]:
        """The signed content, without the proof"""
        return json.loads(self._body)

    def to_dict(self) -> Dict[str, Any]:
        vc = self.body()
        vc["proof"] = json.loads(self._proof)
        return vc

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @property
    def id(self) -> str:
        return self.body()["id"]

    @property
    def issuer(self) -> str:
        return self.body()["issuer"]

    @property
    def type(self) -> List[str]:
        return self.body().get("type", [])

    @property
    def subject(self) -> str:
        return self.body()["credentialSubject"].get("id")

    @property
    def credential_subject(self) -> Dict[str, Any]:
        return self.body()["credentialSubject"]

    @property
    def issuance_date(self) -> Optional[str]:
        return self.body().get("issuanceDate")

    @property
    def expiration_date(self) -> Optional[str]:
        return self.body().get("expirationDate")

    @property
    def proof(self) -> Dict[str, Any]:
        return json.loads(self._proof)

    def verify(self, issuer_identity) -> bool:
        return verify_credential_signature(self, issuer_identity)

    def is_expired(self) -> bool:
        return is_expired(self)

    def create_selective_disclosure(self, attributes_to_reveal: Iterable[str]) -> Dict[str, Any]:
        """Projection with only the requested claims; carries no proof."""
        return _project(self.body(), attributes_to_reveal)

    def to_unsigned(self) -> VerifiableCredential:
        """Editable copy with a new id; it has to be signed again."""
        body = self.body()
        claims = {k: v for k, v in body["credentialSubject"].items() if k != "id"}
        types = body.get("type", [])
        return VerifiableCredential(
            issuer=body["issuer"],
            subject=body["credentialSubject"].get("id"),
            credential_type=types[-1] if types else BASE_CREDENTIAL_TYPE,
            expiration_date=body.get("expirationDate"),
            claims=claims,
            context=list(body.get("@context", credential_contexts())),
        )


# ==================== VERIFICATION ====================

def verify_credential_signature(credential, issuer_identity) -> bool:
    """
    Check the proof of a signed credential against the issuer's public key

    Fails closed: a missing proof, missing proofValue or malformed
    signature encoding gives False. The input is never modified.
    """
    data = credential_to_dict(credential)
    proof = data.pop("proof", None)

    if not isinstance(proof, dict) or not proof.get("proofValue"):
        logger.warning("Credential %s has no proof", data.get("id"))
        return False

    try:
        return issuer_identity.verify(data, proof["proofValue"])
    except MalformedInput as e:
        logger.warning("Credential %s verification failed: %s", data.get("id"), e)
        return False


def is_expired(credential) -> bool:
    """False when there is no expirationDate, otherwise now > expirationDate."""
    data = credential_to_dict(credential)
    expiration = data.get("expirationDate")
    if not expiration:
        return False
    return datetime.now(timezone.utc) > parse_iso(expiration)


# ==================== ISSUANCE ====================

def resolve_credential_type(credential_type: Union[str, CredentialType]) -> str:
    if isinstance(credential_type, CredentialType):
        return credential_type.value
    alias = CREDENTIAL_TYPE_ALIASES.get(credential_type)
    return alias.value if alias else credential_type


def create_credential(
    issuer: str,
    subject: str,
    credential_type: Union[str, CredentialType],
    claims: Mapping[str, Any],
    expiration_date: Union[str, datetime, None] = None
) -> VerifiableCredential:
    """
    Build an unsigned credential

    Args:
        issuer: Issuer DID
        subject: Subject DID
        credential_type: Specific type (or a short name like "merchant")
        claims: Claim name -> value; values must be non-null JSON
        expiration_date: Optional ISO timestamp or datetime

    Returns:
        Unsigned VerifiableCredential
    """
    if not isinstance(claims, Mapping):
        raise InvalidClaims("Claims must be a mapping")
    return VerifiableCredential(
        issuer=issuer,
        subject=subject,
        credential_type=resolve_credential_type(credential_type),
        expiration_date=expiration_date,
        claims=dict(claims),
    )


# (claim name, input key, required)
_MERCHANT_CLAIMS = [
    ("businessName", "name", True),
    ("businessType", "type", False),
    ("registrationNumber", "registrationNumber", False),
    ("taxId", "taxId", False),
    ("address", "address", False),
    ("verificationLevel", "verificationLevel", False),
]

_CUSTOMER_CLAIMS = [
    ("ageVerified", "ageVerified", False),
    ("locationVerified", "locationVerified", False),
    ("identityVerified", "identityVerified", False),
    ("kycLevel", "kycLevel", True),
]

_PRODUCT_CLAIMS = [
    ("productName", "name", True),
    ("manufacturer", "manufacturer", True),
    ("model", "model", False),
    ("serialNumber", "serialNumber", True),
    ("productionDate", "productionDate", False),
    ("certifications", "certifications", False),
    ("supplyChainHash", "supplyChainHash", False),
]

_TRANSACTION_CLAIMS = [
    ("transactionId", "id", False),
    ("buyer", "buyer", True),
    ("seller", "seller", True),
    ("productId", "productId", True),
    ("amount", "amount", True),
    ("currency", "currency", False),
    ("timestamp", "timestamp", False),
    ("status", "status", False),
]


def _pick_claims(credential_type: CredentialType, fields, info: Mapping[str, Any]) -> Dict[str, Any]:
    missing = [key for _, key, required in fields if required and info.get(key) is None]
    if missing:
        raise MissingClaim(credential_type.value, missing)
    return {
        claim: info[key]
        for claim, key, _ in fields
        if info.get(key) is not None
    }


class MarketplaceCredentials:
    """Factories for the marketplace credential types"""

    @staticmethod
    def create_merchant_credential(issuer, merchant_did, business_info, expiration_date=None):
        claims = _pick_claims(CredentialType.MERCHANT, _MERCHANT_CLAIMS, business_info)
        claims.setdefault("verificationLevel", "basic")
        claims["verificationDate"] = utc_now()
        return create_credential(issuer, merchant_did, CredentialType.MERCHANT, claims, expiration_date)

    @staticmethod
    def create_customer_credential(issuer, customer_did, customer_info, expiration_date=None):
        claims = _pick_claims(CredentialType.CUSTOMER, _CUSTOMER_CLAIMS, customer_info)
        claims["verificationDate"] = utc_now()
        return create_credential(issuer, customer_did, CredentialType.CUSTOMER, claims, expiration_date)

    @staticmethod
    def create_product_credential(issuer, product_did, product_info, expiration_date=None):
        claims = _pick_claims(CredentialType.PRODUCT, _PRODUCT_CLAIMS, product_info)
        return create_credential(issuer, product_did, CredentialType.PRODUCT, claims, expiration_date)

    @staticmethod
    def create_transaction_credential(issuer, transaction_did, transaction_info, expiration_date=None):
        claims = _pick_claims(CredentialType.TRANSACTION, _TRANSACTION_CLAIMS, transaction_info)
        return create_credential(issuer, transaction_did, CredentialType.TRANSACTION, claims, expiration_date)

    @classmethod
    def build(cls, credential_type, issuer, subject, claims, expiration_date=None) -> VerifiableCredential:
        """Dispatch on a short type name; other types take the claims verbatim."""
        factories = {
            "merchant": cls.create_merchant_credential,
            "customer": cls.create_customer_credential,
            "product": cls.create_product_credential,
            "transaction": cls.create_transaction_credential,
        }
        factory = factories.get(credential_type)
        if factory is None:
            return create_credential(issuer, subject, credential_type, claims, expiration_date)
        return factory(issuer, subject, claims, expiration_date)
