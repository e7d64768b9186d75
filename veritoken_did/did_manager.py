"""
DID Manager - Identities and W3C DID Documents for the VeriToken marketplace

DID Format: did:<method>:<network>:<uuid4>
  e.g. did:veritoken-merchant:mainnet:0b6c2e7e-...

Every identity is one `Identity` record tagged with an EntityKind; the
role-specific document extension is chosen by that kind.

Reference: https://www.w3.org/TR/did-core/
"""

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import settings
from .entities import (
    INFO_SECTION,
    SUMMARY_BUILDERS,
    SUMMARY_KEYS,
    EntityKind,
    check_transition,
    default_metadata,
    merge_metadata,
    role_context,
    summary_keys,
)
from .exceptions import (
    KeyAlreadyPresent,
    MalformedInput,
    SignatureMismatch,
    UnknownEntityType,
    WrongEntityKind,
)
from .key_manager import (
    ED25519_KEY_TYPE,
    WALLET_KEY_TYPE,
    KeyPair,
    generate_ed25519_keypair,
    recover_wallet_address,
    sign_ed25519,
    verify_ed25519,
)
from .timeutil import advance, utc_now

logger = logging.getLogger(__name__)

DID_CONTEXT = [
    "https://www.w3.org/ns/did/v1",
    "https://w3id.org/security/suites/ed25519-2020/v1",
]

RELATIONSHIPS = [
    ("authentication", "authentication"),
    ("assertionMethod", "assertion_method"),
    ("keyAgreement", "key_agreement"),
    ("capabilityInvocation", "capability_invocation"),
    ("capabilityDelegation", "capability_delegation"),
]


@dataclass
class ServiceEndpoint:
    """Service endpoint in DID Document"""
    id: str
    type: str
    service_endpoint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "serviceEndpoint": self.service_endpoint
        }


@dataclass
class DIDDocument:
    """
    W3C DID Document

    Reference: https://www.w3.org/TR/did-core/#core-properties
    """
    id: str
    controller: Optional[str] = None
    context: List[str] = field(default_factory=lambda: list(DID_CONTEXT))
    verification_method: List[Dict] = field(default_factory=list)
    authentication: List[str] = field(default_factory=list)
    assertion_method: List[str] = field(default_factory=list)
    key_agreement: List[str] = field(default_factory=list)
    capability_invocation: List[str] = field(default_factory=list)
    capability_delegation: List[str] = field(default_factory=list)
    service: List[Dict] = field(default_factory=list)
    also_known_as: List[str] = field(default_factory=list)
    created: str = ""
    updated: str = ""

    # Role summary, e.g. ("merchantInfo", {...})
    role_info_key: Optional[str] = None
    role_info: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.controller:
            self.controller = self.id
        if not self.created:
            self.created = utc_now()
        if not self.updated:
            self.updated = self.created

    def validate(self) -> "DIDDocument":
        """Every relationship must reference a listed verification method."""
        method_ids = {vm.get("id") for vm in self.verification_method}
        for json_name, attr in RELATIONSHIPS:
            for ref in getattr(self, attr):
                if ref not in method_ids:
                    raise MalformedInput(
                        f"{json_name} references unknown verification method {ref}"
                    )
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C DID Document JSON format"""
        doc = {
            "@context": list(self.context),
            "id": self.id,
            "controller": self.controller,
            "created": self.created,
            "updated": self.updated,
            "verificationMethod": copy.deepcopy(self.verification_method),
        }
        for json_name, attr in RELATIONSHIPS:
            doc[json_name] = list(getattr(self, attr))

        if self.service:
            doc["service"] = copy.deepcopy(self.service)
        if self.also_known_as:
            doc["alsoKnownAs"] = list(self.also_known_as)
        if self.role_info_key:
            doc[self.role_info_key] = copy.deepcopy(self.role_info)

        return doc

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DIDDocument":
        """Create DIDDocument from dictionary"""
        if not isinstance(data, dict) or "id" not in data:
            raise MalformedInput("DID Document must be an object with an id")

        role_key = next((key for key in summary_keys() if key in data), None)
        try:
            doc = cls(
                id=data["id"],
                controller=data.get("controller"),
                context=list(data.get("@context", DID_CONTEXT)),
                verification_method=copy.deepcopy(data.get("verificationMethod", [])),
                authentication=list(data.get("authentication", [])),
                assertion_method=list(data.get("assertionMethod", [])),
                key_agreement=list(data.get("keyAgreement", [])),
                capability_invocation=list(data.get("capabilityInvocation", [])),
                capability_delegation=list(data.get("capabilityDelegation", [])),
                service=copy.deepcopy(data.get("service", [])),
                also_known_as=list(data.get("alsoKnownAs", [])),
                created=data.get("created", ""),
                updated=data.get("updated", ""),
                role_info_key=role_key,
                role_info=copy.deepcopy(data[role_key]) if role_key else None,
            )
        except (TypeError, AttributeError) as e:
            raise MalformedInput(f"Unexpected DID Document shape: {e}") from e
        return doc.validate()


@dataclass
class Identity:
    """
    A DID with its keys, document and role metadata

    `id` is generated once at construction. The private key never leaves
    the object through export().
    """
    kind: EntityKind = EntityKind.BASIC
    network: str = field(default_factory=lambda: settings.DEFAULT_NETWORK)
    method: str = ""
    id: str = ""
    public_key: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    document: Optional[DIDDocument] = None
    created: str = ""
    updated: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    wallets: List[str] = field(default_factory=list)
    service_base_url: str = field(default_factory=lambda: settings.SERVICE_BASE_URL, repr=False)
    wallet_chain_id: int = field(default_factory=lambda: settings.WALLET_CHAIN_ID, repr=False)

    def __post_init__(self):
        self.kind = EntityKind.parse(self.kind)
        if not self.method:
            self.method = self.kind.method
        if not self.id:
            self.id = self.generate_id(self.method, self.network)
        if not self.created:
            self.created = utc_now()
        if not self.updated:
            self.updated = self.created
        if not self.metadata:
            self.metadata = default_metadata(self.kind)
        if self.kind is EntityKind.TRANSACTION and not self.metadata["transactionInfo"].get("timestamp"):
            self.metadata["transactionInfo"]["timestamp"] = self.created

    @staticmethod
    def generate_id(method: str, network: str) -> str:
        """Format: did:<method>:<network>:<uuid4>"""
        return f"did:{method}:{network}:{uuid.uuid4()}"

    @property
    def key_id(self) -> str:
        return f"{self.id}#key-1"

    @property
    def has_private_key(self) -> bool:
        return bool(self.private_key)

    def _touch(self):
        self.updated = advance(self.updated)

    # ==================== KEYS ====================

    def generate_keypair(self) -> KeyPair:
        """
        Generate the identity's Ed25519 key pair

        Raises KeyAlreadyPresent when keys exist; rotate_keypair() is the
        explicit way to replace them.
        """
        if self.public_key:
            raise KeyAlreadyPresent(f"{self.id} already has a key pair")
        return self._install_keypair()

    def rotate_keypair(self) -> KeyPair:
        """Replace the key pair. Signatures made with the old key stop verifying."""
        keypair = self._install_keypair()
        if self.document is not None:
            self.create_document()
        logger.info("Rotated key pair for %s", self.id)
        return keypair

    def _install_keypair(self) -> KeyPair:
        keypair = generate_ed25519_keypair(self.id)
        self.public_key = keypair.public_key
        self.private_key = keypair.private_key
        self._touch()
        return keypair

    def sign(self, data: Any) -> str:
        """Sign `data` with this identity's private key; hex signature."""
        return sign_ed25519(self.private_key, data)

    def verify(self, data: Any, signature: str) -> bool:
        """Check a hex signature over `data` against this identity's public key."""
        return verify_ed25519(self.public_key, data, signature)

    def link_wallet(self, address: str, signature: str) -> "Identity":
        """
        Link an Ethereum account to this DID

        Args:
            address: The wallet address being linked
            signature: EIP-191 signature of the binding message for this DID,
                made with the wallet's key (see sign_wallet_binding)
        """
        recovered = recover_wallet_address(self.id, signature)
        if recovered.lower() != address.lower():
            raise SignatureMismatch(
                f"Binding for {self.id} was signed by {recovered}, not {address}"
            )
        if recovered.lower() not in (w.lower() for w in self.wallets):
            self.wallets.append(recovered)
            self._touch()
            if self.document is not None:
                self.create_document()
            logger.info("Linked wallet %s to %s", recovered, self.id)
        return self

    # ==================== DOCUMENT ====================

    def create_document(self) -> DIDDocument:
        """
        Build the DID Document, generating keys first if there are none

        The base document is built for every kind, then the role extension
        for this kind is applied on top of it.
        """
        if not self.public_key:
            self.generate_keypair()

        verification_method = KeyPair(
            key_id=self.key_id,
            public_key=self.public_key,
            key_type=ED25519_KEY_TYPE,
            controller=self.id,
            created_at=self.created,
        ).to_verification_method()

        doc = DIDDocument(
            id=self.id,
            created=self.created,
            updated=self.updated,
            verification_method=[verification_method],
            authentication=[self.key_id],
            assertion_method=[self.key_id],
            key_agreement=[self.key_id],
            capability_invocation=[self.key_id],
            capability_delegation=[self.key_id],
        )

        for index, address in enumerate(self.wallets, start=1):
            account_id = f"eip155:{self.wallet_chain_id}:{address}"
            doc.verification_method.append({
                "id": f"{self.id}#wallet-{index}",
                "type": WALLET_KEY_TYPE,
                "controller": self.id,
                "blockchainAccountId": account_id,
            })
            doc.also_known_as.append(account_id)

        if self.kind is not EntityKind.BASIC:
            self._extend_document(doc)

        self.document = doc.validate()
        return self.document

    def _extend_document(self, doc: DIDDocument):
        doc.context.append(role_context(self.kind))
        doc.service = [
            ServiceEndpoint(
                id=f"{self.id}#marketplace-service",
                type="MarketplaceService",
                service_endpoint=f"{self.service_base_url.rstrip('/')}/{self.kind.value}/{self.id}",
            ).to_dict()
        ]
        doc.role_info_key = SUMMARY_KEYS[self.kind]
        doc.role_info = SUMMARY_BUILDERS[self.kind](self.metadata)

    # ==================== ROLE METADATA ====================

    def _require(self, *kinds: EntityKind):
        if self.kind not in kinds:
            allowed = ", ".join(k.value for k in kinds)
            raise WrongEntityKind(f"{self.id} is a {self.kind.value}, expected {allowed}")

    def _merge_info(self, kind: EntityKind, info: Dict[str, Any]) -> "Identity":
        self._require(kind)
        self.metadata[INFO_SECTION[kind]].update(copy.deepcopy(info))
        self._touch()
        return self

    def set_info(self, info: Dict[str, Any]) -> "Identity":
        """Merge into this kind's info section (businessInfo, profile, ...)"""
        if self.kind is EntityKind.TRANSACTION:
            return self.set_transaction_info(info)
        if self.kind not in INFO_SECTION:
            raise WrongEntityKind(f"{self.id} is a {self.kind.value} and has no role info")
        return self._merge_info(self.kind, info)

    def info(self) -> Dict[str, Any]:
        """Copy of the role info section (businessInfo, profile, ...)"""
        section = INFO_SECTION.get(self.kind)
        return copy.deepcopy(self.metadata[section]) if section else {}

    def add_credential(self, credential_id: str) -> "Identity":
        self._require(EntityKind.MERCHANT, EntityKind.CUSTOMER)
        self.metadata["credentials"].append(credential_id)
        self._touch()
        return self

    # Merchant

    def set_business_info(self, business_info: Dict[str, Any]) -> "Identity":
        return self._merge_info(EntityKind.MERCHANT, business_info)

    def update_reputation(self, positive: bool) -> "Identity":
        """Record one transaction outcome and recompute the score (0-100)."""
        self._require(EntityKind.MERCHANT)
        reputation = self.metadata["reputation"]
        reputation["totalTransactions"] += 1
        if positive:
            reputation["positiveReviews"] += 1
        else:
            reputation["negativeReviews"] += 1

        total = reputation["positiveReviews"] + reputation["negativeReviews"]
        reputation["score"] = (reputation["positiveReviews"] / total) * 100 if total > 0 else 0
        self._touch()
        return self

    # Customer

    def set_profile(self, profile: Dict[str, Any]) -> "Identity":
        return self._merge_info(EntityKind.CUSTOMER, profile)

    def add_purchase(self, purchase: Dict[str, Any]) -> "Identity":
        self._require(EntityKind.CUSTOMER)
        self.metadata["purchaseHistory"].append(copy.deepcopy(purchase))
        self._touch()
        return self

    # Product

    def set_product_info(self, product_info: Dict[str, Any]) -> "Identity":
        return self._merge_info(EntityKind.PRODUCT, product_info)

    def add_supply_chain_event(self, event: Dict[str, Any]) -> "Identity":
        """Append an event; eventId and timestamp are always assigned here."""
        self._require(EntityKind.PRODUCT)
        self._touch()
        recorded = copy.deepcopy(event)
        recorded["eventId"] = f"event_{uuid.uuid4().hex}"
        recorded["timestamp"] = self.updated
        self.metadata["supplyChain"].append(recorded)
        return self

    def transfer_ownership(self, new_owner: str) -> "Identity":
        """The first assignment records no history entry."""
        self._require(EntityKind.PRODUCT)
        ownership = self.metadata["ownership"]
        self._touch()
        if ownership["currentOwner"]:
            ownership["ownershipHistory"].append({
                "previousOwner": ownership["currentOwner"],
                "newOwner": new_owner,
                "timestamp": self.updated,
            })
        ownership["currentOwner"] = new_owner
        return self

    # Transaction

    def set_transaction_info(self, transaction_info: Dict[str, Any]) -> "Identity":
        self._require(EntityKind.TRANSACTION)
        current = self.metadata["transactionInfo"]["status"]
        status = transaction_info.get("status")
        if status is not None and status != current:
            check_transition(current, status)
        return self._merge_info(EntityKind.TRANSACTION, transaction_info)

    def add_attestation(self, attestation: Any) -> "Identity":
        self._require(EntityKind.TRANSACTION)
        self.metadata["attestations"].append(copy.deepcopy(attestation))
        self._touch()
        return self

    def update_status(self, status: str) -> "Identity":
        """pending -> completed | cancelled; completed and cancelled are final."""
        self._require(EntityKind.TRANSACTION)
        target = check_transition(self.metadata["transactionInfo"]["status"], status)
        self.metadata["transactionInfo"]["status"] = target.value
        self._touch()
        return self

    # ==================== EXPORT / IMPORT ====================

    def export(self) -> Dict[str, Any]:
        """Storage form of the identity. Never contains the private key."""
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "method": self.method,
            "network": self.network,
            "publicKey": self.public_key,
            "document": self.document.to_dict() if self.document else None,
            "created": self.created,
            "updated": self.updated,
            "metadata": copy.deepcopy(self.metadata),
        }
        if self.wallets:
            data["wallets"] = list(self.wallets)
        return data

    @classmethod
    def from_export(cls, data: Dict[str, Any], private_key: Optional[str] = None) -> "Identity":
        """Rebuild an identity from export(). Records without metadata get the defaults."""
        if not isinstance(data, dict):
            raise MalformedInput("Identity record must be an object")
        missing = [name for name in ("id", "method", "network", "publicKey") if name not in data]
        if missing:
            raise MalformedInput(f"Identity record is missing: {', '.join(missing)}")

        try:
            kind = EntityKind.parse(data.get("kind") or EntityKind.from_method(data["method"]))
        except UnknownEntityType as e:
            raise MalformedInput(f"Identity record has an unknown kind: {e}") from e
        metadata = merge_metadata(kind, data.get("metadata") or {})

        document = data.get("document")
        return cls(
            kind=kind,
            network=data["network"],
            method=data["method"],
            id=data["id"],
            public_key=data["publicKey"],
            private_key=private_key,
            document=DIDDocument.from_dict(document) if document else None,
            created=data.get("created", ""),
            updated=data.get("updated", ""),
            metadata=metadata,
            wallets=list(data.get("wallets", [])),
        )


class DIDManager:
    """
    In-memory registry of identities

    Features:
    - Register and resolve identities by DID
    - Resolve DID Documents
    - Resolve identities by linked wallet address
    """

    def __init__(self):
        self._identities: Dict[str, Identity] = {}

    def register(self, identity: Identity) -> Identity:
        self._identities[identity.id] = identity
        return identity

    def resolve(self, did: str) -> Optional[Identity]:
        return self._identities.get(did)

    def resolve_document(self, did: str) -> Optional[DIDDocument]:
        identity = self._identities.get(did)
        return identity.document if identity else None

    def resolve_by_address(self, address: str) -> Optional[Identity]:
        wanted = address.lower()
        for identity in self._identities.values():
            if any(w.lower() == wanted for w in identity.wallets):
                return identity
        return None

    def list_dids(self, kind: Optional[EntityKind] = None) -> List[str]:
        return [
            did for did, identity in self._identities.items()
            if kind is None or identity.kind is kind
        ]

    def get_statistics(self) -> Dict[str, int]:
        stats = {kind.value: 0 for kind in EntityKind}
        for identity in self._identities.values():
            stats[identity.kind.value] += 1
        stats["total"] = len(self._identities)
        stats["linked_wallets"] = sum(len(i.wallets) for i in self._identities.values())
        return stats
