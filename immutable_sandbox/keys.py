"""
Key management module for Immutable Sandbox.

Provides the analyst's signing identity: Ed25519 keys kept in a local
keyring directory, a trust store of public keys with validity windows,
a revocation list, and the persisted reference to the identity in use.
"""

import os
import re
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

from .errors import SigningFailed
from .logging_config import audit_log
from .models import DetachedSignature
from .util import (
    atomic_write_bytes,
    b64d,
    b64e,
    canonicalize,
    load_json,
    pretty_json_bytes,
    sha256_hex,
    utc_iso_millis,
    utc_now,
)

TRUST_STORE_ID = "immutable-sandbox-trust-store"


class Signer(ABC):
    """Abstract interface for the agent that signs manifests."""

    @abstractmethod
    def sign(self, payload: bytes) -> DetachedSignature:
        """
        Produce a detached signature binding payload to the signer and
        the signing time (see ``signature_body``).

        Args:
            payload: The exact manifest bytes

        Returns:
            DetachedSignature carrying the key id
        """

    @abstractmethod
    def get_kid(self) -> str:
        """Get the key ID used for signing."""


class FileKeySigner(Signer):
    """
    File-based signer using an Ed25519 key stored as JSON.

    Key file format: {"kid": ..., "private_key_b64": ...}
    """

    def __init__(self, signing_key_path: Union[str, Path]):
        self._signing_key_path = Path(signing_key_path)
        try:
            raw = load_json(self._signing_key_path)
            self._kid = raw["kid"]
            self._sk = SigningKey(b64d(raw["private_key_b64"]))
        except (OSError, KeyError, ValueError, CryptoError) as e:
            raise SigningFailed(f"Cannot load signing key {self._signing_key_path}: {e}", step="sign") from e

    def sign(self, payload: bytes) -> DetachedSignature:
        signed_at = utc_iso_millis(utc_now())
        sig = self._sk.sign(signature_body(payload, self._kid, signed_at)).signature
        return DetachedSignature(kid=self._kid, sig_b64=b64e(sig), signed_at=signed_at)

    def get_kid(self) -> str:
        return self._kid

    @property
    def public_key_b64(self) -> str:
        return b64e(bytes(self._sk.verify_key))


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature_b64: Base64-encoded signature
        payload: The signed data
        public_key_b64: Base64-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, b64d(signature_b64))
        return True
    except (CryptoError, ValueError):
        return False


def signature_body(payload: bytes, kid: str, signed_at: str) -> bytes:
    """
    Canonical bytes actually signed for a manifest.

    The key id and signing time are covered by the signature, so neither
    can be edited in the detached signature file without detection.
    """
    return canonicalize({
        "kid": kid,
        "manifest_sha256": sha256_hex(payload),
        "signed_at": signed_at,
    })


def verify_detached(sig: DetachedSignature, payload: bytes, public_key_b64: str) -> bool:
    """Verify a detached manifest signature together with its kid and signed_at."""
    return verify_ed25519(sig.sig_b64, signature_body(payload, sig.kid, sig.signed_at), public_key_b64)


# ============================================================
# Trust store and revocation
# ============================================================

def empty_trust_store() -> Dict[str, Any]:
    return {
        "trust_store_id": TRUST_STORE_ID,
        "signer_keys": {},
        "signer_key_validity": {},
        "timestamp_authority_keys": {},
    }


def load_json_or(path: Union[str, Path], default: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return load_json(path)
    except FileNotFoundError:
        return default


def is_revoked(kid: str, at_epoch: int, revocation: Optional[Dict[str, Any]]) -> bool:
    if not revocation:
        return False
    effective = int(revocation.get("effective_at_epoch", 0))
    revoked = set(revocation.get("revoked_kids", []))
    return at_epoch >= effective and kid in revoked


def key_valid_at(kid: str, signed_at_epoch: int, trust: Dict[str, Any]) -> bool:
    validity = trust.get("signer_key_validity", {}).get(kid)
    if not validity:
        return True
    nb = validity.get("not_before_epoch")
    na = validity.get("not_after_epoch")
    if nb is not None and signed_at_epoch < int(nb):
        return False
    if na is not None and signed_at_epoch > int(na):
        return False
    return True


def resolve_signer_key(
    kid: str,
    signed_at_epoch: int,
    trust: Dict[str, Any],
    revocation: Optional[Dict[str, Any]] = None,
    trusted_time_epoch: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Resolve the public key for a claimed identity, failing closed.

    Revocation is judged at the time proven by a verified timestamp
    token. The signer's own clock is never trusted for it: without a
    token the signature counts as made now.

    Args:
        kid: Claimed key id
        signed_at_epoch: Signing time from the (signed) signature file
        trust: Trust store
        revocation: Revocation list
        trusted_time_epoch: Time from an authenticated timestamp token

    Returns:
        (public_key_b64, None) when usable, (None, reason) otherwise
    """
    pub = trust.get("signer_keys", {}).get(kid)
    if not pub:
        return None, f"unknown key id {kid}"
    revocation_time = trusted_time_epoch if trusted_time_epoch is not None else int(time.time())
    if is_revoked(kid, revocation_time, revocation):
        if trusted_time_epoch is None:
            return None, f"key {kid} revoked and no trusted timestamp predates the revocation"
        return None, f"key {kid} revoked"
    if not key_valid_at(kid, signed_at_epoch, trust):
        return None, f"key {kid} not valid at signing time"
    return pub, None


def _slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "analyst"


class Keyring:
    """
    Local identity store.

    Layout:
        <keyring_dir>/<kid>.json    private key (mode 0600)
        <trust_store_path>          public keys and validity windows
        <revocation_list_path>      revoked key ids
        <identity_path>             {"kid": ...} identity chosen for signing

    Thread-safe for concurrent provisioning and trust store updates.
    """

    def __init__(
        self,
        keyring_dir: Union[str, Path],
        trust_store_path: Union[str, Path],
        revocation_list_path: Union[str, Path],
        identity_path: Union[str, Path],
    ):
        self.keyring_dir = Path(keyring_dir)
        self.trust_store_path = Path(trust_store_path)
        self.revocation_list_path = Path(revocation_list_path)
        self.identity_path = Path(identity_path)
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings) -> "Keyring":
        return cls(
            keyring_dir=settings.keyring_dir,
            trust_store_path=settings.trust_store_path,
            revocation_list_path=settings.revocation_list_path,
            identity_path=settings.identity_path,
        )

    def key_path(self, kid: str) -> Path:
        return self.keyring_dir / f"{kid}.json"

    def current_identity(self) -> Optional[str]:
        """The persisted identity reference, or None if none was provisioned."""
        data = load_json_or(self.identity_path, {})
        kid = data.get("kid")
        if kid and self.key_path(kid).exists():
            return kid
        return None

    def identity_info(self) -> Dict[str, Any]:
        return load_json_or(self.identity_path, {})

    def load_trust_store(self) -> Dict[str, Any]:
        return load_json_or(self.trust_store_path, empty_trust_store())

    def load_revocation_list(self) -> Dict[str, Any]:
        return load_json_or(self.revocation_list_path, {"revoked_kids": [], "effective_at_epoch": 0})

    def provision_identity(
        self,
        name: str,
        email: Optional[str] = None,
        validity_days: Optional[int] = None,
    ) -> str:
        """
        Generate a new Ed25519 identity and make it the signing identity.

        Args:
            name: Analyst name recorded with the identity
            email: Optional contact recorded with the identity
            validity_days: Key validity window; None means no expiry

        Returns:
            The new key id
        """
        with self._lock:
            sk = SigningKey.generate()
            pub = bytes(sk.verify_key)
            kid = f"{_slug(name)}-{sha256_hex(pub)[:16]}"
            now = int(time.time())

            self.keyring_dir.mkdir(parents=True, exist_ok=True)
            key_file = self.key_path(kid)
            atomic_write_bytes(key_file, pretty_json_bytes({"kid": kid, "private_key_b64": b64e(bytes(sk))}))
            os.chmod(key_file, 0o600)

            trust = self.load_trust_store()
            trust.setdefault("signer_keys", {})[kid] = b64e(pub)
            trust.setdefault("signer_key_validity", {})[kid] = {
                "not_before_epoch": now,
                "not_after_epoch": now + validity_days * 86400 if validity_days else None,
            }
            atomic_write_bytes(self.trust_store_path, pretty_json_bytes(trust))

            atomic_write_bytes(self.identity_path, pretty_json_bytes({
                "kid": kid,
                "name": name,
                "email": email,
                "created_at": utc_iso_millis(utc_now()),
            }))

        audit_log.identity_provisioned(kid, str(self.trust_store_path))
        return kid

    def revoke(self, kid: str, effective_at_epoch: Optional[int] = None) -> None:
        """Add a key id to the revocation list."""
        with self._lock:
            revocation = self.load_revocation_list()
            revoked = set(revocation.get("revoked_kids", []))
            revoked.add(kid)
            revocation["revoked_kids"] = sorted(revoked)
            if effective_at_epoch is not None:
                revocation["effective_at_epoch"] = int(effective_at_epoch)
            atomic_write_bytes(self.revocation_list_path, pretty_json_bytes(revocation))

    def get_signer(self, kid: Optional[str] = None) -> FileKeySigner:
        """
        Signer for kid, or for the persisted identity.

        Raises:
            SigningFailed: no identity has been provisioned or its key is gone
        """
        kid = kid or self.current_identity()
        if not kid:
            raise SigningFailed(
                "No signing identity configured; provision one explicitly "
                "(`immutable-sandbox identity init`) or finalize with identity provisioning enabled",
                step="sign",
            )
        key_file = self.key_path(kid)
        if not key_file.exists():
            raise SigningFailed(f"Private key for identity {kid} not found in {self.keyring_dir}", step="sign")
        return FileKeySigner(key_file)

    def register_timestamp_authority(self, kid: str, public_key_b64: str) -> None:
        """Publish a local timestamp authority's public key in the trust store."""
        with self._lock:
            trust = self.load_trust_store()
            tsa_keys = trust.setdefault("timestamp_authority_keys", {})
            if tsa_keys.get(kid) == public_key_b64:
                return
            tsa_keys[kid] = public_key_b64
            atomic_write_bytes(self.trust_store_path, pretty_json_bytes(trust))
