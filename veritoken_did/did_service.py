"""
DID System Integration Service
===============================

The in-process interface used by the marketplace API, onboarding and
product-authenticity flows:
- create_entity / get_entity
- issue_credential / verify_credential
- selective disclosure and revocation
- transaction and ownership flows that issue attestations

Token accounting belongs to the callers; this service knows nothing about
balances.
"""

import copy
import logging
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .credential_issuer import MarketplaceCredentials, SignedCredential
from .credential_verifier import CredentialVerifier, RevocationRegistry, VerificationResult
from .did_manager import DIDManager, Identity
from .entities import INFO_SECTION, EntityKind, check_transition, validate_info
from .exceptions import DIDError, KeyUnavailable, NotFound, WrongEntityKind
from .storage import FileStore

logger = logging.getLogger(__name__)


class DIDService:
    """
    Main service class for marketplace identity operations

    State lives on the instance. With a FileStore, identities, credentials
    and revocations are also written to disk; with a key passphrase the
    private keys are stored encrypted so issuers can be reloaded.
    """

    def __init__(
        self,
        store: Optional[FileStore] = None,
        network: Optional[str] = None,
        key_passphrase: Optional[str] = None
    ):
        self.store = store
        self.network = network
        self.key_passphrase = key_passphrase

        self.did_manager = DIDManager()
        self.revocations = RevocationRegistry()
        self.verifier = CredentialVerifier(self.revocations)
        self._credentials: Dict[str, SignedCredential] = {}

        if self.store is not None:
            for issuer_did, revoked_ids in self.store.load_revocations().items():
                self.revocations.sync(issuer_did, revoked_ids)

    def _persist(self, identity: Identity):
        if self.store is None:
            return
        self.store.save_identity(identity)
        if self.key_passphrase and identity.has_private_key:
            self.store.save_private_key(identity, self.key_passphrase)

    # ==================== ENTITIES ====================

    def create_entity(self, kind: Union[str, EntityKind], info: Optional[Dict[str, Any]] = None) -> Identity:
        """
        Create a marketplace entity with keys and a DID Document

        Args:
            kind: "merchant", "customer", "product", "transaction" or "basic"
            info: Optional initial metadata, e.g. {"businessInfo": {...}}

        Returns:
            The registered Identity
        """
        kind = EntityKind.parse(kind)
        options = {"network": self.network} if self.network else {}
        entity = Identity(kind=kind, **options)

        section = INFO_SECTION.get(kind)
        if section and info and info.get(section):
            entity.set_info(info[section])

        entity.generate_keypair()
        entity.create_document()

        self.did_manager.register(entity)
        self._persist(entity)
        logger.info("Created %s entity %s", kind.value, entity.id)
        return entity

    def get_entity(self, did: str) -> Optional[Identity]:
        """Registry first, then the store. None when unknown."""
        entity = self.did_manager.resolve(did)
        if entity is not None or self.store is None:
            return entity
        # Identities saved without a key file load public-only
        passphrase = self.key_passphrase if self.store.has_private_key(did) else None
        try:
            entity = self.store.load_identity(did, passphrase=passphrase)
        except NotFound:
            return None
        return self.did_manager.register(entity)

    def _require_entity(self, did: str, kind: Optional[EntityKind] = None) -> Identity:
        entity = self.get_entity(did)
        if entity is None:
            raise NotFound(f"DID not found: {did}")
        if kind is not None and entity.kind is not kind:
            raise WrongEntityKind(f"{did} is a {entity.kind.value}, expected {kind.value}")
        return entity

    def resolve_by_address(self, address: str) -> Optional[Identity]:
        return self.did_manager.resolve_by_address(address)

    def link_wallet(self, did: str, address: str, signature: str) -> Identity:
        entity = self._require_entity(did).link_wallet(address, signature)
        self._persist(entity)
        return entity

    # ==================== CREDENTIALS ====================

    def issue_credential(
        self,
        issuer_id: str,
        subject_id: str,
        credential_type: str,
        claims: Dict[str, Any],
        expiration_date=None
    ) -> SignedCredential:
        """
        Issue and sign a credential

        When the subject is a known entity whose kind matches the credential
        type, its role info is used as defaults beneath `claims`.
        """
        issuer = self._require_entity(issuer_id)
        if not issuer.has_private_key:
            raise KeyUnavailable(f"Issuer {issuer_id} has no private key loaded")

        subject = self.get_entity(subject_id)
        merged = dict(claims)
        if subject is not None and subject.kind.value == credential_type:
            defaults = {k: v for k, v in subject.info().items() if v is not None}
            merged = {**defaults, **claims}

        credential = MarketplaceCredentials.build(
            credential_type, issuer.id, subject_id, merged, expiration_date
        )
        signed = credential.sign(issuer)
        self._credentials[signed.id] = signed

        if subject is not None and subject.kind in (EntityKind.MERCHANT, EntityKind.CUSTOMER):
            subject.add_credential(signed.id)
            self._persist(subject)
        if self.store is not None:
            self.store.save_credential(signed)

        logger.info("Issued %s credential %s to %s", credential_type, signed.id, subject_id)
        return signed

    def get_credential(self, credential_id: str) -> SignedCredential:
        credential = self._credentials.get(credential_id)
        if credential is not None:
            return credential
        if self.store is None:
            raise NotFound(f"Credential not found: {credential_id}")
        credential = self.store.load_credential(credential_id)
        self._credentials[credential.id] = credential
        return credential

    def verify_credential(self, credential_id: str) -> VerificationResult:
        """Signature, expiry and revocation of a known credential"""
        credential = self.get_credential(credential_id)
        return self.verify_presented(credential)

    def verify_presented(self, credential) -> VerificationResult:
        """Verify a credential handed in by a holder (SignedCredential or dict)."""
        if not isinstance(credential, SignedCredential):
            credential = SignedCredential.from_dict(credential)
        issuer = self._require_entity(credential.issuer)
        return self.verifier.verify(credential, issuer)

    def create_selective_disclosure(self, credential_id: str, attributes_to_reveal: Iterable[str]) -> Dict[str, Any]:
        return self.get_credential(credential_id).create_selective_disclosure(attributes_to_reveal)

    def revoke_credential(self, credential_id: str, reason: str = "") -> None:
        credential = self.get_credential(credential_id)
        self.revocations.revoke(credential, reason)
        if self.store is not None:
            self.store.save_revocations(self.revocations.export())

    # ==================== MARKETPLACE FLOWS ====================

    def create_transaction(
        self,
        buyer_id: str,
        seller_id: str,
        product_id: str,
        amount,
        currency: str = "USD"
    ) -> Identity:
        for did in (buyer_id, seller_id, product_id):
            self._require_entity(did)

        info = {
            "buyer": buyer_id,
            "seller": seller_id,
            "productId": product_id,
            "amount": amount,
            "currency": currency,
            "status": "pending",
        }
        validate_info(EntityKind.TRANSACTION, info)
        return self.create_entity(EntityKind.TRANSACTION, {"transactionInfo": info})

    def update_transaction_status(self, transaction_id: str, status: str) -> Tuple[Identity, SignedCredential]:
        """Change status, then attest the new state with a self-signed credential."""
        transaction = self._require_entity(transaction_id, EntityKind.TRANSACTION)
        if not transaction.has_private_key:
            raise KeyUnavailable(f"Transaction {transaction_id} has no private key loaded")
        check_transition(transaction.metadata["transactionInfo"]["status"], status)

        # Roll back the status if the attestation cannot be issued
        snapshot = copy.deepcopy(transaction.metadata), transaction.updated
        transaction.update_status(status)
        try:
            attestation = self.issue_credential(
                transaction.id,
                transaction.id,
                "transaction",
                {**transaction.info(), "id": transaction.id}
            )
        except DIDError:
            transaction.metadata, transaction.updated = snapshot
            raise
        transaction.add_attestation(attestation.id)
        transaction.create_document()
        self._persist(transaction)
        return transaction, attestation

    def transfer_product_ownership(
        self,
        product_id: str,
        new_owner_id: str,
        reason: str = "Sale",
        location: str = "Unknown"
    ) -> Dict[str, Any]:
        """Log an ownership_transfer supply-chain event, then move ownership."""
        product = self._require_entity(product_id, EntityKind.PRODUCT)
        previous_owner = product.metadata["ownership"]["currentOwner"]

        product.add_supply_chain_event({
            "type": "ownership_transfer",
            "description": f"Ownership transferred from {previous_owner} to {new_owner_id}",
            "location": location,
            "actor": previous_owner,
            "metadata": {
                "previousOwner": previous_owner,
                "newOwner": new_owner_id,
                "transferReason": reason,
            },
        })
        product.transfer_ownership(new_owner_id)
        product.create_document()
        self._persist(product)

        return {
            "previousOwner": previous_owner,
            "newOwner": new_owner_id,
            "transferEvent": product.metadata["supplyChain"][-1],
        }

    # ==================== STATISTICS ====================

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "dids": self.did_manager.get_statistics(),
            "credentials": {
                "total_issued": len(self._credentials),
                "total_revoked": len(self.revocations),
            },
        }
