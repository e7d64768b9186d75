"""
Exceptions raised by the VeriToken DID system.

Verification outcomes (invalid signature, expired, revoked) are results,
not errors; only programmer and environment failures are raised.
"""


class DIDError(Exception):
    """Base class for all DID system errors"""


class KeyUnavailable(DIDError):
    """The key half required for an operation is not present"""


class KeyAlreadyPresent(DIDError):
    """Keys exist already; use rotate_keypair() to replace them"""


class NotFound(DIDError, LookupError):
    """No identity or credential is stored under the requested id"""


class InvalidClaims(DIDError, ValueError):
    """Claim data cannot be represented in a credential"""


class MissingClaim(InvalidClaims):
    """A required claim is absent from the input map"""

    def __init__(self, credential_type: str, missing: list):
        self.credential_type = credential_type
        self.missing = list(missing)
        super().__init__(
            f"Missing required {credential_type} claims: {', '.join(self.missing)}"
        )


class MalformedInput(DIDError, ValueError):
    """Unparseable JSON or an unexpected record shape"""


class SignatureMismatch(DIDError):
    """A binding signature was produced by a different key"""


class WrongEntityKind(DIDError, TypeError):
    """A role-specific operation was called on another kind of identity"""


class InvalidStatusTransition(DIDError):
    """Transaction status change not allowed from the current status"""


class UnknownEntityType(DIDError, ValueError):
    """Entity type string does not name a known entity kind"""
