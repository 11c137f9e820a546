"""
Audit bundle export.

Packs everything an auditor needs to re-check one finalized experiment
offline into a single zip:
- manifest.json, manifest.json.sig, manifest.tsr (if present)
- trust store snapshot and revocation list
- verification report produced at export time
"""

import json
import time
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .keys import Keyring
from .models import MANIFEST_FILE, SIGNATURE_FILE, TIMESTAMP_FILE
from .verifier import VerificationReport


def bundle_items(location: Union[str, Path], keyring: Keyring) -> List[Tuple[Path, str]]:
    """(source path, archive name) pairs for the files that exist."""
    location = Path(location)
    items = [
        (location / MANIFEST_FILE, MANIFEST_FILE),
        (location / SIGNATURE_FILE, SIGNATURE_FILE),
        (location / TIMESTAMP_FILE, TIMESTAMP_FILE),
        (keyring.trust_store_path, "trust_store.json"),
        (keyring.revocation_list_path, "revocation_list.json"),
    ]
    return [(src, arc) for src, arc in items if src.exists()]


def export_audit_bundle(
    location: Union[str, Path],
    keyring: Keyring,
    out_dir: Union[str, Path] = ".",
    report: Optional[VerificationReport] = None,
) -> Path:
    """
    Write audit_bundle_<experiment>_<epoch>.zip into out_dir.

    Returns:
        Path of the zip
    """
    location = Path(location)
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    label = report.experiment_id if report is not None and report.experiment_id else location.name
    out = out_dir / f"audit_bundle_{label}_{int(time.time())}.zip"

    with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as z:
        for src, arc in bundle_items(location, keyring):
            z.write(src, arcname=arc)
        if report is not None:
            z.writestr("verification_report.json", json.dumps(report.to_dict(), sort_keys=True, indent=2) + "\n")
    return out
