"""
Immutable Sandbox

Provenance records for data analysis experiments.

An experiment is a directory with an ``input/`` tree that must not
change and an ``output/`` tree of results. Finalizing the experiment
hashes both, snapshots the analysis code and the environment, writes a
manifest, signs its exact bytes with the analyst's Ed25519 identity and
obtains a trusted timestamp over them. Anyone holding the trust store
can later prove that the outputs were derived from unaltered inputs.

Lifecycle:
    CREATED -> IN_PROGRESS -> COMPLETED

There is no way back from COMPLETED. A second finalize is rejected,
never overwrites.

Usage:
    import asyncio
    from immutable_sandbox import Sandbox, Settings

    sandbox = Sandbox.from_settings(Settings.from_env())

    async def main():
        exp = await sandbox.create_experiment("exp1", "/data/exp1", input_source="/data/raw")
        await sandbox.open(exp.id)
        # ... analysis writes into /data/exp1/output ...
        result = await sandbox.finalize(exp.id)
        for warning in result.warnings:
            print(warning)  # e.g. timestamp authority unreachable

        report = await sandbox.verify(exp.id)
        if not report.is_valid():
            print(report.outcome, report.mismatched_paths)

    asyncio.run(main())
"""

__version__ = "1.0.0"

# Configuration
from .config import Settings, validate_config

# Errors
from .errors import (
    SandboxError,
    DuplicateLocation,
    NotFound,
    InvalidTransition,
    AlreadyFinalized,
    HashingIOError,
    ScaffoldError,
    SigningFailed,
    TimestampUnavailable,
)

# Data model
from .models import (
    Experiment,
    ExperimentStatus,
    Manifest,
    EnvironmentDescription,
    DetachedSignature,
    Attestation,
    FinalizeResult,
)

# Hashing and manifest
from .hashing import hash_directory, hash_directory_async, compare_hashes, HashDiff
from .manifest import build_manifest, write_manifest, read_manifest

# Signing and timestamping
from .keys import Signer, FileKeySigner, Keyring
from .timestamping import (
    TimestampAuthority,
    Rfc3161TimestampAuthority,
    LocalTimestampAuthority,
    DisabledTimestampAuthority,
    get_timestamp_authority,
)
from .attestation import AttestationService

# Registry
from .db import RegistryDatabase
from .registry import ExperimentRegistry

# Verification
from .verifier import IntegrityVerifier, VerificationOutcome, VerificationReport

# Orchestration
from .sandbox import Sandbox


__all__ = [
    "__version__",

    # Configuration
    "Settings",
    "validate_config",

    # Errors
    "SandboxError",
    "DuplicateLocation",
    "NotFound",
    "InvalidTransition",
    "AlreadyFinalized",
    "HashingIOError",
    "ScaffoldError",
    "SigningFailed",
    "TimestampUnavailable",

    # Data model
    "Experiment",
    "ExperimentStatus",
    "Manifest",
    "EnvironmentDescription",
    "DetachedSignature",
    "Attestation",
    "FinalizeResult",

    # Hashing and manifest
    "hash_directory",
    "hash_directory_async",
    "compare_hashes",
    "HashDiff",
    "build_manifest",
    "write_manifest",
    "read_manifest",

    # Signing and timestamping
    "Signer",
    "FileKeySigner",
    "Keyring",
    "TimestampAuthority",
    "Rfc3161TimestampAuthority",
    "LocalTimestampAuthority",
    "DisabledTimestampAuthority",
    "get_timestamp_authority",
    "AttestationService",

    # Registry
    "RegistryDatabase",
    "ExperimentRegistry",

    # Verification
    "IntegrityVerifier",
    "VerificationOutcome",
    "VerificationReport",

    # Orchestration
    "Sandbox",
]
