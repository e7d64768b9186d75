"""
VeriToken Decentralized Identity (DID) System
==============================================

DIDs and Verifiable Credentials for the VeriToken marketplace

Components:
- Identity / DIDManager: DIDs, keys and W3C DID Documents
- EntityKind: merchant, customer, product and transaction roles
- MarketplaceCredentials: issuing Verifiable Credentials
- CredentialVerifier: verifying Verifiable Credentials
- FileStore: flat-file persistence
- DIDService: main integration service

Standards:
- W3C DID Core 1.0: https://www.w3.org/TR/did-core/
- W3C Verifiable Credentials: https://www.w3.org/TR/vc-data-model/
"""

from .did_manager import DIDManager, DIDDocument, Identity, ServiceEndpoint
from .entities import EntityKind, TransactionStatus
from .key_manager import CANONICAL_SERIALIZATION, KeyPair, sign_wallet_binding
from .credential_issuer import (
    CredentialType,
    MarketplaceCredentials,
    SignedCredential,
    VerifiableCredential,
    create_credential,
)
from .credential_verifier import (
    CredentialVerifier,
    RevocationRegistry,
    VerificationResult,
    VerificationStatus,
)
from .storage import FileStore
from .did_service import DIDService
from .exceptions import (
    DIDError,
    InvalidClaims,
    InvalidStatusTransition,
    KeyAlreadyPresent,
    KeyUnavailable,
    MalformedInput,
    MissingClaim,
    NotFound,
    SignatureMismatch,
    UnknownEntityType,
    WrongEntityKind,
)

__version__ = "1.0.0"
__all__ = [
    # Core DID
    "Identity",
    "DIDManager",
    "DIDDocument",
    "ServiceEndpoint",
    "EntityKind",
    "TransactionStatus",

    # Keys
    "KeyPair",
    "CANONICAL_SERIALIZATION",
    "sign_wallet_binding",

    # Credentials
    "create_credential",
    "MarketplaceCredentials",
    "VerifiableCredential",
    "SignedCredential",
    "CredentialType",
    "CredentialVerifier",
    "RevocationRegistry",
    "VerificationResult",
    "VerificationStatus",

    # Storage & service
    "FileStore",
    "DIDService",

    # Errors
    "DIDError",
    "InvalidClaims",
    "InvalidStatusTransition",
    "KeyAlreadyPresent",
    "KeyUnavailable",
    "MalformedInput",
    "MissingClaim",
    "NotFound",
    "SignatureMismatch",
    "UnknownEntityType",
    "WrongEntityKind",
]
