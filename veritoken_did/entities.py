"""
Marketplace entity kinds

Every identity carries a `kind` and a kind-specific metadata payload.
This module holds what differs per kind: the DID method, the default
metadata, the document extension and the schema checks.
"""

import copy
from enum import Enum
from typing import Any, Callable, Dict, List

from .config import settings
from .exceptions import InvalidStatusTransition, MalformedInput, MissingClaim, UnknownEntityType


class EntityKind(Enum):
    """Marketplace roles an identity can take"""
    BASIC = "basic"
    MERCHANT = "merchant"
    CUSTOMER = "customer"
    PRODUCT = "product"
    TRANSACTION = "transaction"

    @classmethod
    def parse(cls, value) -> "EntityKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownEntityType(f"Unknown entity type: {value}") from None

    @property
    def method(self) -> str:
        """DID method name for this kind"""
        if self is EntityKind.BASIC:
            return "veritoken"
        return f"veritoken-{self.value}"

    @classmethod
    def from_method(cls, method: str) -> "EntityKind":
        for kind in cls:
            if kind.method == method:
                return kind
        return cls.BASIC


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Terminal statuses map to no successors
TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.CANCELLED},
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.CANCELLED: set(),
}


def check_transition(current: str, new: str) -> TransactionStatus:
    """Validate a transaction status change and return the new status."""
    try:
        target = TransactionStatus(new)
    except ValueError:
        raise InvalidStatusTransition(f"Unknown transaction status: {new}") from None
    try:
        source = TransactionStatus(current)
    except ValueError:
        raise InvalidStatusTransition(f"Transaction is in unknown status: {current}") from None

    if target not in TRANSACTION_TRANSITIONS[source]:
        raise InvalidStatusTransition(
            f"Cannot move transaction from {source.value} to {target.value}"
        )
    return target


# ==================== DEFAULT METADATA ====================

_DEFAULT_METADATA: Dict[EntityKind, Dict[str, Any]] = {
    EntityKind.BASIC: {},
    EntityKind.MERCHANT: {
        "businessInfo": {
            "name": None,
            "type": None,
            "registrationNumber": None,
            "taxId": None,
            "address": None,
            "contactInfo": None,
            "verificationLevel": "unverified",
        },
        "credentials": [],
        "reputation": {
            "score": 0,
            "totalTransactions": 0,
            "positiveReviews": 0,
            "negativeReviews": 0,
        },
    },
    EntityKind.CUSTOMER: {
        "profile": {
            "preferences": {},
            "kycLevel": "none",
            "ageVerified": False,
            "locationVerified": False,
        },
        "credentials": [],
        "purchaseHistory": [],
    },
    EntityKind.PRODUCT: {
        "productInfo": {
            "name": None,
            "manufacturer": None,
            "model": None,
            "serialNumber": None,
            "category": None,
            "specifications": {},
            "certifications": [],
        },
        "supplyChain": [],
        "ownership": {
            "currentOwner": None,
            "ownershipHistory": [],
        },
    },
    EntityKind.TRANSACTION: {
        "transactionInfo": {
            "buyer": None,
            "seller": None,
            "productId": None,
            "amount": None,
            "currency": "USD",
            "status": TransactionStatus.PENDING.value,
            "timestamp": None,
        },
        "attestations": [],
    },
}


def default_metadata(kind: EntityKind) -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULT_METADATA[kind])


def merge_metadata(kind: EntityKind, stored: Any) -> Dict[str, Any]:
    """
    Lay stored metadata over the defaults for `kind`

    Missing sections and fields take their default values. A section of
    the wrong JSON type raises MalformedInput.
    """
    if not isinstance(stored, dict):
        raise MalformedInput(f"{kind.value} metadata must be an object")

    metadata = default_metadata(kind)
    for name, value in stored.items():
        default = metadata.get(name)
        if default is None:
            metadata[name] = copy.deepcopy(value)
        elif not isinstance(value, type(default)):
            raise MalformedInput(
                f"{kind.value} metadata '{name}' must be a {type(default).__name__}"
            )
        elif isinstance(default, dict):
            default.update(copy.deepcopy(value))
        else:
            metadata[name] = copy.deepcopy(value)
    return metadata


# The metadata section each kind's setter merges into
INFO_SECTION = {
    EntityKind.MERCHANT: "businessInfo",
    EntityKind.CUSTOMER: "profile",
    EntityKind.PRODUCT: "productInfo",
    EntityKind.TRANSACTION: "transactionInfo",
}


# ==================== SCHEMA VALIDATION ====================

REQUIRED_INFO_FIELDS = {
    EntityKind.MERCHANT: ["name", "type", "registrationNumber"],
    EntityKind.PRODUCT: ["name", "manufacturer", "serialNumber"],
    EntityKind.TRANSACTION: ["buyer", "seller", "productId", "amount"],
}


def validate_info(kind: EntityKind, info: Dict[str, Any]) -> bool:
    """Check the required fields of a role's info map (None and "" count as missing)."""
    required = REQUIRED_INFO_FIELDS.get(kind, [])
    missing = [name for name in required if info.get(name) in (None, "")]
    if missing:
        raise MissingClaim(kind.value, missing)
    return True


# ==================== DOCUMENT EXTENSIONS ====================

def _merchant_summary(metadata: Dict[str, Any]) -> Dict[str, Any]:
    business = metadata["businessInfo"]
    return {
        "entityType": EntityKind.MERCHANT.value,
        "businessName": business.get("name"),
        "verificationLevel": business.get("verificationLevel"),
        "reputationScore": metadata["reputation"]["score"],
    }


def _customer_summary(metadata: Dict[str, Any]) -> Dict[str, Any]:
    # Only verification flags; preferences and history stay private
    profile = metadata["profile"]
    return {
        "entityType": EntityKind.CUSTOMER.value,
        "kycLevel": profile.get("kycLevel"),
        "verificationStatus": {
            "age": profile.get("ageVerified", False),
            "location": profile.get("locationVerified", False),
        },
    }


def _product_summary(metadata: Dict[str, Any]) -> Dict[str, Any]:
    info = metadata["productInfo"]
    return {
        "entityType": EntityKind.PRODUCT.value,
        "name": info.get("name"),
        "manufacturer": info.get("manufacturer"),
        "category": info.get("category"),
        "currentOwner": metadata["ownership"]["currentOwner"],
        "certifications": len(info.get("certifications") or []),
    }


def _transaction_summary(metadata: Dict[str, Any]) -> Dict[str, Any]:
    info = metadata["transactionInfo"]
    return {
        "entityType": EntityKind.TRANSACTION.value,
        "status": info.get("status"),
        "timestamp": info.get("timestamp"),
        "attestations": len(metadata["attestations"]),
    }


SUMMARY_BUILDERS: Dict[EntityKind, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    EntityKind.MERCHANT: _merchant_summary,
    EntityKind.CUSTOMER: _customer_summary,
    EntityKind.PRODUCT: _product_summary,
    EntityKind.TRANSACTION: _transaction_summary,
}

# Document key holding each kind's summary object
SUMMARY_KEYS = {
    EntityKind.MERCHANT: "merchantInfo",
    EntityKind.CUSTOMER: "customerInfo",
    EntityKind.PRODUCT: "productInfo",
    EntityKind.TRANSACTION: "transactionInfo",
}


def role_context(kind: EntityKind) -> str:
    return f"{settings.ROLE_CONTEXT_BASE.rstrip('/')}/{kind.value}/v1"


def summary_keys() -> List[str]:
    return list(SUMMARY_KEYS.values())
