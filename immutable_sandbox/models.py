"""
Data model for Immutable Sandbox.

Experiment records are plain dataclasses owned by the registry; the
manifest is a pydantic model because its serialized form is an external,
stable contract consumed by verifiers and auditors.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .util import pretty_json_bytes

MANIFEST_VERSION = "1"

# Fixed artifact names inside an experiment root
INPUT_DIR = "input"
OUTPUT_DIR = "output"
MANIFEST_FILE = "manifest.json"
SIGNATURE_FILE = "manifest.json.sig"
TIMESTAMP_FILE = "manifest.tsr"
PROVENANCE_DIR = ".provenance"
CODE_SNAPSHOT_DIR = ".provenance/code_snapshot"


class ExperimentStatus(str, Enum):
    """
    Lifecycle states.

    CREATED: provisioned, never opened
    IN_PROGRESS: opened for work; inputs and outputs may still change
    COMPLETED: finalized and attested (terminal)
    """
    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class Experiment:
    """One registry record."""
    id: str
    name: str
    location: str
    status: ExperimentStatus
    created_at: str
    last_opened_at: Optional[str] = None
    finalized_at: Optional[str] = None
    manifest_path: Optional[str] = None
    timestamped: Optional[bool] = None

    @property
    def is_finalized(self) -> bool:
        return self.status == ExperimentStatus.COMPLETED

    @classmethod
    def from_row(cls, row: Any) -> "Experiment":
        timestamped = row["timestamped"]
        return cls(
            id=row["id"],
            name=row["name"],
            location=row["location"],
            status=ExperimentStatus(row["status"]),
            created_at=row["created_at"],
            last_opened_at=row["last_opened_at"],
            finalized_at=row["finalized_at"],
            manifest_path=row["manifest_path"],
            timestamped=None if timestamped is None else bool(timestamped),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_opened_at": self.last_opened_at,
            "finalized_at": self.finalized_at,
            "manifest_path": self.manifest_path,
            "timestamped": self.timestamped,
        }


class EnvironmentDescription(BaseModel):
    python_version: str
    python_implementation: str
    platform: str
    system_info: str = ""
    packages: str = ""
    capture_errors: List[str] = Field(default_factory=list)


class Manifest(BaseModel):
    """
    Content-addressed summary of one experiment.

    The bytes produced by ``to_bytes`` are what gets signed and
    timestamped; any later change to the file invalidates both.
    """
    manifest_version: str = MANIFEST_VERSION
    experiment_id: str
    experiment_name: str
    timestamp: str
    hash_algorithm: str = "sha256"
    input_hashes: Dict[str, str]
    output_hashes: Dict[str, str]
    code_hashes: Dict[str, str] = Field(default_factory=dict)
    environment_description: EnvironmentDescription

    def to_bytes(self) -> bytes:
        return pretty_json_bytes(self.model_dump())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Manifest":
        return cls.model_validate(json.loads(data.decode("utf-8")))


@dataclass
class DetachedSignature:
    """Contents of the detached signature file."""
    kid: str
    sig_b64: str
    signed_at: str
    alg: str = "ed25519"

    def to_dict(self) -> Dict[str, Any]:
        return {"kid": self.kid, "alg": self.alg, "sig_b64": self.sig_b64, "signed_at": self.signed_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetachedSignature":
        missing = [k for k in ("kid", "sig_b64", "signed_at") if not data.get(k)]
        if missing:
            raise ValueError(f"Incomplete signature data, missing: {missing}")
        return cls(kid=data["kid"], sig_b64=data["sig_b64"], signed_at=data["signed_at"], alg=data.get("alg", "ed25519"))


@dataclass
class Attestation:
    """Signature plus (optional) trusted timestamp bound to one manifest."""
    manifest_sha256: str
    signature_path: str
    key_id: str
    timestamp_path: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def timestamped(self) -> bool:
        return self.timestamp_path is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manifest_sha256": self.manifest_sha256,
            "signature_path": self.signature_path,
            "key_id": self.key_id,
            "timestamp_path": self.timestamp_path,
            "timestamped": self.timestamped,
            "warnings": list(self.warnings),
        }


@dataclass
class FinalizeResult:
    experiment: Experiment
    manifest: Manifest
    manifest_path: str
    attestation: Attestation
    warnings: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment": self.experiment.to_dict(),
            "manifest": self.manifest.model_dump(),
            "manifest_path": self.manifest_path,
            "attestation": self.attestation.to_dict(),
            "warnings": list(self.warnings),
            "notices": list(self.notices),
        }
