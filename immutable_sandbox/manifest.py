"""
Manifest builder.

Assembles digests and the environment description into a ``Manifest``
and writes it to the experiment's fixed manifest path. Whether the
experiment may be finalized at all is decided by the registry, not here.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .models import MANIFEST_FILE, EnvironmentDescription, Manifest
from .util import atomic_write_bytes, sha256_hex, utc_iso_millis, utc_now


def build_manifest(
    experiment_id: str,
    experiment_name: str,
    input_hashes: Dict[str, str],
    output_hashes: Dict[str, str],
    environment: EnvironmentDescription,
    code_hashes: Optional[Dict[str, str]] = None,
    created_at: Optional[datetime] = None,
) -> Manifest:
    """
    Build an unsigned manifest.

    Args:
        experiment_id: Registry id the manifest is bound to
        experiment_name: Human-readable experiment name
        input_hashes: Digests of input/
        output_hashes: Digests of output/
        environment: Captured environment description
        code_hashes: Digests of the code snapshot
        created_at: Creation instant (default: now), rendered UTC to the millisecond

    Returns:
        Manifest model
    """
    return Manifest(
        experiment_id=experiment_id,
        experiment_name=experiment_name,
        timestamp=utc_iso_millis(created_at or utc_now()),
        input_hashes=dict(sorted(input_hashes.items())),
        output_hashes=dict(sorted(output_hashes.items())),
        code_hashes=dict(sorted((code_hashes or {}).items())),
        environment_description=environment,
    )


def manifest_path_for(location: Union[str, Path]) -> Path:
    return Path(location) / MANIFEST_FILE


def write_manifest(manifest: Manifest, location: Union[str, Path]) -> Tuple[Path, bytes]:
    """
    Serialize and atomically write the manifest.

    Returns:
        (path written, exact bytes written); the bytes are the signing input
    """
    path = manifest_path_for(location)
    data = manifest.to_bytes()
    atomic_write_bytes(path, data)
    return path, data


def read_manifest(path: Union[str, Path]) -> Tuple[Manifest, bytes]:
    """Read a manifest file, returning the parsed model and the raw bytes."""
    data = Path(path).read_bytes()
    return Manifest.from_bytes(data), data


def manifest_digest(data: bytes) -> str:
    """SHA-256 hex of the serialized manifest; the value that gets timestamped."""
    return sha256_hex(data)
