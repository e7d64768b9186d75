"""
File storage for identities and credentials

Layout under the storage directory:
    <sanitized-did>.json                      identity export (no private key)
    credential_<sanitized-credential-id>.json signed credential
    revocations.json                          revocation lists per issuer
    keys/<sanitized-did>_<hash>.pem           passphrase-encrypted private key

Sanitizing replaces every non-alphanumeric character with "_". If that
name already holds a different id, "_<sha256(id)[:16]>" is appended so
distinct ids never overwrite each other. Loads check the stored id.

Writes go through a temp file and os.replace(). The store assumes a
single writer process.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .config import settings
from .credential_issuer import SignedCredential
from .did_manager import Identity
from .exceptions import KeyUnavailable, MalformedInput, NotFound
from .key_manager import decrypt_private_key, encrypt_private_key

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


def sanitize_id(value: str) -> str:
    return _UNSAFE.sub("_", value)


class FileStore:
    """Flat-file JSON store"""

    CREDENTIAL_PREFIX = "credential_"
    REVOCATIONS_FILE = "revocations.json"

    def __init__(self, storage_dir: Union[str, Path, None] = None):
        self.storage_dir = Path(storage_dir or settings.STORAGE_DIR)
        self.keys_dir = self.storage_dir / "keys"
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    # ==================== FILE HELPERS ====================

    def _candidates(self, prefix: str, record_id: str, suffix: str = ".json") -> List[Path]:
        base = f"{prefix}{sanitize_id(record_id)}"
        digest = hashlib.sha256(record_id.encode("utf-8")).hexdigest()[:16]
        return [
            self.storage_dir / f"{base}{suffix}",
            self.storage_dir / f"{base}_{digest}{suffix}",
        ]

    def _read_json(self, path: Path) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedInput(f"{path.name} is not valid JSON: {e}") from e

    def _stored_id(self, path: Path) -> Optional[str]:
        data = self._read_json(path)
        return data.get("id") if isinstance(data, dict) else None

    def _path_for_write(self, prefix: str, record_id: str) -> Path:
        primary, fallback = self._candidates(prefix, record_id)
        if not primary.exists() or self._stored_id(primary) == record_id:
            return primary
        logger.warning("%s collides with another record; using %s", primary.name, fallback.name)
        return fallback

    def _path_for_read(self, prefix: str, record_id: str) -> Optional[Path]:
        for path in self._candidates(prefix, record_id):
            if path.exists() and self._stored_id(path) == record_id:
                return path
        return None

    @staticmethod
    def _atomic_write(path: Path, content: Union[str, bytes]):
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "wb" if isinstance(content, bytes) else "w"
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, mode, **({} if mode == "wb" else {"encoding": "utf-8"})) as f:
                f.write(content)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ==================== IDENTITIES ====================

    def save_identity(self, identity: Identity) -> Path:
        """Write the identity export; the private key is not part of it."""
        path = self._path_for_write("", identity.id)
        self._atomic_write(path, json.dumps(identity.export(), indent=2))
        logger.info("Saved identity %s to %s", identity.id, path.name)
        return path

    def load_identity(self, did: str, passphrase: Optional[str] = None) -> Identity:
        """
        Load an identity by DID

        With a passphrase, the private key saved by save_private_key() is
        attached as well.
        """
        path = self._path_for_read("", did)
        if path is None:
            raise NotFound(f"DID not found: {did}")

        private_key = self._load_private_key(did, passphrase) if passphrase else None
        return Identity.from_export(self._read_json(path), private_key=private_key)

    def identity_exists(self, did: str) -> bool:
        return self._path_for_read("", did) is not None

    def list_identities(self) -> List[str]:
        dids = []
        for path in sorted(self.storage_dir.glob("*.json")):
            if path.name.startswith(self.CREDENTIAL_PREFIX) or path.name == self.REVOCATIONS_FILE:
                continue
            data = self._read_json(path)
            if isinstance(data, dict) and str(data.get("id", "")).startswith("did:"):
                dids.append(data["id"])
        return dids

    # ==================== PRIVATE KEYS ====================

    def _key_path(self, did: str) -> Path:
        digest = hashlib.sha256(did.encode("utf-8")).hexdigest()[:16]
        return self.keys_dir / f"{sanitize_id(did)}_{digest}.pem"

    def save_private_key(self, identity: Identity, passphrase: str) -> Path:
        """Store the private key as passphrase-encrypted PKCS8 PEM."""
        if not identity.private_key:
            raise KeyUnavailable(f"{identity.id} has no private key to save")
        path = self._key_path(identity.id)
        self._atomic_write(path, encrypt_private_key(identity.private_key, passphrase))
        os.chmod(path, 0o600)
        return path

    def has_private_key(self, did: str) -> bool:
        return self._key_path(did).exists()

    def _load_private_key(self, did: str, passphrase: str) -> str:
        path = self._key_path(did)
        if not path.exists():
            raise KeyUnavailable(f"No stored private key for {did}")
        return decrypt_private_key(path.read_bytes(), passphrase)

    # ==================== CREDENTIALS ====================

    def save_credential(self, credential: SignedCredential) -> Path:
        path = self._path_for_write(self.CREDENTIAL_PREFIX, credential.id)
        self._atomic_write(path, credential.to_json())
        logger.info("Saved credential %s to %s", credential.id, path.name)
        return path

    def load_credential(self, credential_id: str) -> SignedCredential:
        path = self._path_for_read(self.CREDENTIAL_PREFIX, credential_id)
        if path is None:
            raise NotFound(f"Credential not found: {credential_id}")
        return SignedCredential.from_dict(self._read_json(path))

    def load_credential_file(self, path: Union[str, Path]) -> SignedCredential:
        path = Path(path)
        if not path.exists():
            raise NotFound(f"Credential file not found: {path}")
        return SignedCredential.from_dict(self._read_json(path))

    def iter_credentials(self) -> Iterator[SignedCredential]:
        for path in sorted(self.storage_dir.glob(f"{self.CREDENTIAL_PREFIX}*.json")):
            yield self.load_credential_file(path)

    # ==================== REVOCATIONS ====================

    def save_revocations(self, revoked: Dict[str, List[str]]) -> Path:
        path = self.storage_dir / self.REVOCATIONS_FILE
        self._atomic_write(path, json.dumps(revoked, indent=2, sort_keys=True))
        return path

    def load_revocations(self) -> Dict[str, List[str]]:
        path = self.storage_dir / self.REVOCATIONS_FILE
        if not path.exists():
            return {}
        data = self._read_json(path)
        if not isinstance(data, dict):
            raise MalformedInput(f"{path.name} must map issuers to credential ids")
        return data
