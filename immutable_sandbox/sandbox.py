"""
Caller-facing orchestration.

``Sandbox`` ties the registry, scaffolding, the manifest pipeline and
the verifier together. Within one finalize the pipeline is strictly
sequential:

    claim lease -> hash inputs -> hash outputs -> snapshot code and
    environment -> write manifest -> sign -> timestamp -> complete

Finalize calls for different experiments are independent and can run
concurrently (``asyncio.gather``); the registry lease serializes calls
on the same experiment.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .attestation import AttestationService
from .config import DEFAULT_CODE_EXTENSIONS, Settings
from .db import RegistryDatabase
from .environment import capture_environment, snapshot_code_async
from .errors import DuplicateLocation, InvalidTransition, SandboxError, ScaffoldError
from .hashing import hash_directory_async
from .keys import Keyring, Signer
from .logging_config import audit_log, get_operation_id, set_operation_id
from .manifest import build_manifest, write_manifest
from .models import INPUT_DIR, OUTPUT_DIR, Experiment, ExperimentStatus, FinalizeResult
from .registry import ExperimentRegistry, normalize_location
from .scaffold import check_clean_location, scaffold_experiment_async
from .timestamping import Rfc3161TimestampAuthority, TimestampAuthority, get_timestamp_authority
from .verifier import IntegrityVerifier, VerificationReport

logger = logging.getLogger(__name__)


def _ensure_operation_id() -> None:
    if not get_operation_id():
        set_operation_id()


class Sandbox:
    """Experiment lifecycle operations for one registry and one identity keyring."""

    def __init__(
        self,
        registry: ExperimentRegistry,
        keyring: Keyring,
        tsa: TimestampAuthority,
        signer: Optional[Signer] = None,
        follow_symlinks: bool = False,
        code_extensions: Sequence[str] = DEFAULT_CODE_EXTENSIONS,
        image_id: str = "",
        freeze_command: Optional[Sequence[str]] = None,
    ):
        """
        Args:
            registry: Experiment state machine
            keyring: Signing identity store and trust store
            tsa: Timestamp authority, independent of the signer
            signer: Overrides the keyring's identity (external signing agents)
            follow_symlinks: Hash symlink targets instead of skipping links
            code_extensions: Suffixes copied into the code snapshot
            image_id: Container/image identifier recorded in the environment
            freeze_command: Command listing installed packages (default: pip freeze)
        """
        self.registry = registry
        self.keyring = keyring
        self.tsa = tsa
        self.signer = signer
        self.follow_symlinks = follow_symlinks
        self.code_extensions = tuple(code_extensions)
        self.image_id = image_id
        self.freeze_command = list(freeze_command) if freeze_command else None

    @classmethod
    def from_settings(cls, settings: Settings, freeze_command: Optional[Sequence[str]] = None) -> "Sandbox":
        keyring = Keyring.from_settings(settings)
        return cls(
            registry=ExperimentRegistry(RegistryDatabase(settings.registry_db), settings.finalize_lease_seconds),
            keyring=keyring,
            tsa=get_timestamp_authority(settings, keyring),
            follow_symlinks=settings.follow_symlinks,
            code_extensions=settings.code_extensions,
            image_id=settings.image_id,
            freeze_command=freeze_command,
        )

    def close(self) -> None:
        self.registry.db.close_connection()

    # ============================================================
    # Lifecycle
    # ============================================================

    async def create_experiment(
        self,
        name: str,
        location: Union[str, Path],
        input_source: Optional[Union[str, Path]] = None,
    ) -> Experiment:
        """
        Register a CREATED experiment and scaffold its directory.

        Raises:
            DuplicateLocation: location registered or already scaffolded
            ScaffoldError: copying the input source failed (record rolled back)
        """
        _ensure_operation_id()
        location = normalize_location(location)
        if self.registry.find_by_location(location) is not None:
            raise DuplicateLocation(f"Location already registered: {location}", step="register")
        check_clean_location(location)

        experiment = self.registry.register(name, location)
        try:
            await scaffold_experiment_async(location, name, input_source)
        except ScaffoldError as e:
            self.registry.unregister(experiment.id)
            e.experiment_id = experiment.id
            raise

        audit_log.experiment_created(experiment.id, name, location)
        return experiment

    async def open(self, exp_id: str) -> Experiment:
        _ensure_operation_id()
        previous = self.registry.get(exp_id)
        experiment = self.registry.open(exp_id)
        audit_log.experiment_opened(exp_id, previous.status.value)
        return experiment

    async def get(self, exp_id: str) -> Experiment:
        return self.registry.get(exp_id)

    async def list(self) -> List[Experiment]:
        return self.registry.list()

    async def remove(self, exp_id: str) -> Experiment:
        """Administrative removal of the registry record; files stay on disk."""
        _ensure_operation_id()
        experiment = self.registry.remove(exp_id)
        audit_log.experiment_removed(exp_id, experiment.location)
        return experiment

    def _resolve_signer(self, provision_identity: bool, identity_name: Optional[str], notices: List[str]) -> Signer:
        if self.signer is not None:
            return self.signer
        if self.keyring.current_identity() is None and provision_identity:
            kid = self.keyring.provision_identity(identity_name or os.getenv("USER") or "analyst")
            notices.append(
                f"Provisioned new signing identity {kid}; public key published to {self.keyring.trust_store_path}"
            )
        return self.keyring.get_signer()

    async def finalize(
        self,
        exp_id: str,
        provision_identity: bool = False,
        identity_name: Optional[str] = None,
    ) -> FinalizeResult:
        """
        Hash, snapshot, write, sign and timestamp the manifest, then move
        the experiment to COMPLETED.

        Args:
            exp_id: Experiment id
            provision_identity: Create a signing identity if none exists
            identity_name: Name recorded with a provisioned identity

        Returns:
            FinalizeResult; a missing timestamp shows up in ``warnings``

        Raises:
            AlreadyFinalized: the experiment is COMPLETED (nothing is written)
            InvalidTransition: another finalize is in flight
            HashingIOError, SigningFailed, SandboxError: pipeline failure;
                the experiment keeps its prior state
        """
        _ensure_operation_id()
        previous_status = self.registry.get(exp_id).status
        token = self.registry.claim_finalize(exp_id)
        experiment = self.registry.get(exp_id)
        location = Path(experiment.location)
        notices: List[str] = []
        step = "sign"
        try:
            signer = self._resolve_signer(provision_identity, identity_name, notices)

            step = "hash_inputs"
            input_hashes = await hash_directory_async(location / INPUT_DIR, self.follow_symlinks)
            audit_log.finalize_step(exp_id, step, files=len(input_hashes))

            step = "hash_outputs"
            output_hashes = await hash_directory_async(location / OUTPUT_DIR, self.follow_symlinks)
            audit_log.finalize_step(exp_id, step, files=len(output_hashes))

            step = "snapshot"
            code_hashes = await snapshot_code_async(location, self.code_extensions)
            environment = await capture_environment(location, self.image_id, self.freeze_command)
            audit_log.finalize_step(exp_id, step, files=len(code_hashes),
                                    capture_errors=len(environment.capture_errors))

            step = "manifest"
            manifest = build_manifest(
                experiment_id=exp_id,
                experiment_name=experiment.name,
                input_hashes=input_hashes,
                output_hashes=output_hashes,
                environment=environment,
                code_hashes=code_hashes,
            )
            manifest_path, data = await asyncio.to_thread(write_manifest, manifest, location)
            audit_log.finalize_step(exp_id, step, manifest_path=str(manifest_path))

            step = "sign"
            attestation = await AttestationService(signer, self.tsa).attest(manifest_path, data, exp_id)
            audit_log.finalize_step(exp_id, step, key_id=attestation.key_id, timestamped=attestation.timestamped)

            step = "complete"
            experiment = self.registry.complete(exp_id, token, str(manifest_path), attestation.timestamped)
        except SandboxError as e:
            self._abort_finalize(exp_id, token, previous_status, step, e)
            raise
        except OSError as e:
            err = SandboxError(f"Filesystem error: {e}", step=step, experiment_id=exp_id)
            self._abort_finalize(exp_id, token, previous_status, step, err)
            raise err from e
        except Exception as e:
            err = SandboxError(f"Unexpected failure: {type(e).__name__}: {e}", step=step, experiment_id=exp_id)
            self._abort_finalize(exp_id, token, previous_status, step, err)
            raise err from e
        except BaseException:
            # cancellation or interpreter exit; leave no dangling lease
            self.registry.release(exp_id, token, restore_status=previous_status)
            raise

        warnings = list(attestation.warnings)
        warnings.extend(f"Environment capture incomplete: {msg}" for msg in environment.capture_errors)
        audit_log.experiment_finalized(
            exp_id, str(manifest_path), attestation.manifest_sha256, attestation.key_id, attestation.timestamped
        )
        return FinalizeResult(
            experiment=experiment,
            manifest=manifest,
            manifest_path=str(manifest_path),
            attestation=attestation,
            warnings=warnings,
            notices=notices,
        )

    def _abort_finalize(self, exp_id: str, token: str, previous_status: ExperimentStatus,
                        step: str, err: SandboxError) -> None:
        self.registry.release(exp_id, token, restore_status=previous_status)
        err.step = err.step or step
        err.state_changed = False
        err.experiment_id = exp_id
        logger.error("Finalize of %s failed at %s: %s", exp_id, err.step, err.message)
        audit_log.finalize_failed(exp_id, err.step, err.message, state_changed=False)

    # ============================================================
    # Verification
    # ============================================================

    def _verifier(self) -> IntegrityVerifier:
        rfc3161 = self.tsa if isinstance(self.tsa, Rfc3161TimestampAuthority) else None
        return IntegrityVerifier.from_keyring(self.keyring, rfc3161=rfc3161, follow_symlinks=self.follow_symlinks)

    async def verify(self, exp_id: str) -> VerificationReport:
        """
        Re-verify a COMPLETED experiment against its manifest.

        Raises:
            NotFound: unknown id
            InvalidTransition: the experiment is not COMPLETED
        """
        _ensure_operation_id()
        experiment = self.registry.get(exp_id)
        if experiment.status != ExperimentStatus.COMPLETED:
            raise InvalidTransition(
                f"Experiment {exp_id} is {experiment.status.value}; only COMPLETED experiments can be verified",
                step="verify", experiment_id=exp_id,
            )
        report = await self._verifier().verify_location_async(experiment.location, expected_experiment_id=exp_id)
        audit_log.verification_result(exp_id, report.outcome.value, report.problems)
        return report

    async def verify_location(self, location: Union[str, Path]) -> VerificationReport:
        """Registry-free verification of a finalized directory."""
        _ensure_operation_id()
        report = await self._verifier().verify_location_async(normalize_location(location))
        audit_log.verification_result(report.experiment_id, report.outcome.value, report.problems)
        return report
