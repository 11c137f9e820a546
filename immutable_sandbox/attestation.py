"""
Attestation Service.

Signs the manifest (its SHA-256 digest bound to the key id and signing
time) and obtains a trusted timestamp over the same digest. Signing is
fatal to finalize when it fails; timestamping degrades to a warning.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from .errors import SigningFailed, TimestampUnavailable
from .keys import Signer
from .logging_config import audit_log
from .manifest import manifest_digest
from .models import SIGNATURE_FILE, TIMESTAMP_FILE, Attestation
from .timestamping import TimestampAuthority
from .util import atomic_write_bytes, pretty_json_bytes, sha256_bytes

logger = logging.getLogger(__name__)


class AttestationService:
    """
    Binds a signer and a timestamp authority.

    The two are independent parties; the authority never sees the
    signer's key and the signer never sees the token.
    """

    def __init__(self, signer: Signer, tsa: TimestampAuthority):
        self.signer = signer
        self.tsa = tsa

    def _sign(self, data: bytes, location: Path) -> Path:
        try:
            signature = self.signer.sign(data)
        except SigningFailed:
            raise
        except Exception as e:
            raise SigningFailed(f"Signing agent failed: {e}", step="sign") from e
        path = location / SIGNATURE_FILE
        atomic_write_bytes(path, pretty_json_bytes(signature.to_dict()))
        return path

    def _timestamp(self, data: bytes, location: Path) -> Path:
        token = self.tsa.request_token(sha256_bytes(data))
        path = location / TIMESTAMP_FILE
        atomic_write_bytes(path, token)
        return path

    async def attest(self, manifest_path: Path, data: bytes, experiment_id: Optional[str] = None) -> Attestation:
        """
        Sign, then timestamp, the manifest bytes.

        Args:
            manifest_path: Where the manifest was written; artifacts go beside it
            data: The exact bytes written to manifest_path
            experiment_id: For error context and audit events

        Returns:
            Attestation; ``timestamp_path`` is None when no token was obtained

        Raises:
            SigningFailed: no signature could be produced
        """
        location = Path(manifest_path).parent
        try:
            signature_path = await asyncio.to_thread(self._sign, data, location)
        except SigningFailed as e:
            e.experiment_id = e.experiment_id or experiment_id
            raise
        except OSError as e:
            raise SigningFailed(
                f"Cannot write signature file: {e}", step="sign", experiment_id=experiment_id
            ) from e

        attestation = Attestation(
            manifest_sha256=manifest_digest(data),
            signature_path=str(signature_path),
            key_id=self.signer.get_kid(),
        )

        stale = location / TIMESTAMP_FILE
        try:
            attestation.timestamp_path = str(await asyncio.to_thread(self._timestamp, data, location))
        except Exception as e:
            reason = e.message if isinstance(e, TimestampUnavailable) else f"{type(e).__name__}: {e}"
            if stale.exists():
                os.unlink(stale)
            attestation.warnings.append(f"Trusted timestamp not obtained: {reason}")
            logger.warning("Timestamping failed for %s: %s", experiment_id, reason)
            audit_log.timestamp_unavailable(experiment_id or "", reason)

        return attestation
