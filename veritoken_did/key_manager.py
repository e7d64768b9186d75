"""
Key Manager - Cryptographic keys for the VeriToken DID system

Supports:
- Ed25519: DID signing keys (PEM encoded, W3C Ed25519VerificationKey2020)
- secp256k1: Ethereum wallet binding via EIP-191 personal-sign

Canonical serialization
-----------------------
Everything that is signed is first encoded with CANONICAL_SERIALIZATION:
UTF-8 JSON, keys sorted, separators (",", ":"), non-ASCII kept verbatim,
NaN and Infinity rejected. Signing and verification share canonical_json()
so a signature made here verifies in any implementation using the same form.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from eth_account import Account
from eth_account.messages import encode_defunct

from .exceptions import KeyUnavailable, MalformedInput
from .timeutil import utc_now

CANONICAL_SERIALIZATION = "json-c14n-sorted-keys"

ED25519_KEY_TYPE = "Ed25519VerificationKey2020"
ED25519_SIGNATURE_TYPE = "Ed25519Signature2020"
WALLET_KEY_TYPE = "EcdsaSecp256k1RecoveryMethod2020"

ED25519_SIGNATURE_LENGTH = 64
WALLET_BINDING_PREFIX = "VeriToken DID binding: "


@dataclass
class KeyPair:
    """Ed25519 key pair, both halves PEM encoded"""
    key_id: str
    public_key: str  # SPKI PEM
    private_key: Optional[str] = None  # PKCS8 PEM, never exported
    key_type: str = ED25519_KEY_TYPE
    controller: str = ""
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now()

    def to_verification_method(self) -> Dict[str, Any]:
        """Convert to W3C Verification Method format"""
        return {
            "id": self.key_id,
            "type": self.key_type,
            "controller": self.controller,
            "publicKeyPem": self.public_key,
        }


def canonical_json(data: Any) -> bytes:
    """Encode `data` in the canonical form used for every signature."""
    try:
        text = json.dumps(
            data,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise MalformedInput(f"Data is not canonically serializable: {e}") from e
    return text.encode("utf-8")


# ==================== KEY GENERATION ====================

def generate_ed25519_keypair(controller: str) -> KeyPair:
    """
    Generate an Ed25519 key pair for a DID

    Args:
        controller: The DID that will control this key

    Returns:
        KeyPair with PEM encoded keys, key id `<controller>#key-1`
    """
    private_key = ed25519.Ed25519PrivateKey.generate()

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return KeyPair(
        key_id=f"{controller}#key-1",
        public_key=public_pem.decode("ascii"),
        private_key=private_pem.decode("ascii"),
        controller=controller
    )


def _load_private_key(private_pem: str, password: Optional[bytes] = None) -> ed25519.Ed25519PrivateKey:
    try:
        key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyUnavailable(f"Private key could not be loaded: {e}") from e
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise KeyUnavailable("Private key is not an Ed25519 key")
    return key


def _load_public_key(public_pem: str) -> ed25519.Ed25519PublicKey:
    try:
        key = serialization.load_pem_public_key(public_pem.encode("ascii"))
    except (ValueError, UnsupportedAlgorithm) as e:
        raise MalformedInput(f"Public key is not valid PEM: {e}") from e
    if not isinstance(key, ed25519.Ed25519PublicKey):
        raise MalformedInput("Public key is not an Ed25519 key")
    return key


def encrypt_private_key(private_pem: str, passphrase: str) -> bytes:
    """Re-encode a private key as passphrase-protected PKCS8 PEM."""
    key = _load_private_key(private_pem)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
    )


def decrypt_private_key(encrypted_pem: bytes, passphrase: str) -> str:
    """Inverse of encrypt_private_key(); returns unencrypted PKCS8 PEM."""
    key = _load_private_key(encrypted_pem.decode("ascii"), password=passphrase.encode("utf-8"))
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")


# ==================== SIGNING ====================

def sign_ed25519(private_pem: Optional[str], data: Any) -> str:
    """
    Sign the canonical serialization of `data`

    Returns:
        Hex encoded signature
    """
    if not private_pem:
        raise KeyUnavailable("Private key not available for signing")

    message = canonical_json(data)
    return _load_private_key(private_pem).sign(message).hex()


# ==================== VERIFICATION ====================

def verify_ed25519(public_pem: Optional[str], data: Any, signature: str) -> bool:
    """
    Verify a hex signature over the canonical serialization of `data`

    A well-formed signature that does not match returns False. Missing
    key material and malformed signature encodings raise.
    """
    if not public_pem:
        raise KeyUnavailable("Public key not available for verification")

    try:
        sig_bytes = bytes.fromhex(signature)
    except (TypeError, ValueError) as e:
        raise MalformedInput("Signature is not valid hex") from e
    if len(sig_bytes) != ED25519_SIGNATURE_LENGTH:
        raise MalformedInput(
            f"Ed25519 signature must be {ED25519_SIGNATURE_LENGTH} bytes, got {len(sig_bytes)}"
        )

    public_key = _load_public_key(public_pem)
    try:
        public_key.verify(sig_bytes, canonical_json(data))
    except InvalidSignature:
        return False
    return True


# ==================== WALLET BINDING ====================

def wallet_binding_message(did: str) -> str:
    return f"{WALLET_BINDING_PREFIX}{did}"


def sign_wallet_binding(wallet_private_key: Union[str, bytes], did: str) -> str:
    """
    Sign the binding message for `did` with an Ethereum private key

    Returns:
        Hex encoded EIP-191 signature
    """
    msg = encode_defunct(text=wallet_binding_message(did))
    signed = Account.sign_message(msg, private_key=wallet_private_key)
    return signed.signature.hex()


def recover_wallet_address(did: str, signature: str) -> str:
    """Recover the checksummed address that signed the binding for `did`."""
    msg = encode_defunct(text=wallet_binding_message(did))
    try:
        return Account.recover_message(msg, signature=signature)
    except Exception as e:
        # eth_account raises a mix of ValueError and eth_keys errors here
        raise MalformedInput(f"Wallet binding signature is malformed: {e}") from e
