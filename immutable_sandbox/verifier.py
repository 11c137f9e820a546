"""
Integrity Verifier.

Re-checks a finalized experiment directory against its stored manifest:

1. Verify the timestamp token, if present, over the manifest bytes; an
   authenticated token supplies the trusted time used for revocation
2. Verify the detached signature over the manifest digest, key id and
   signing time, resolving the claimed key through the trust store
   (fail closed)
3. Verify the manifest is bound to the expected experiment
4. Recompute input, output and code snapshot digests and compare them

Every check is recorded in the report; the outcome is the most severe
failure by the order in ``OUTCOME_PRECEDENCE``.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .config import DEFAULT_TSA_URL
from .hashing import HashDiff, compare_hashes, hash_directory
from .keys import Keyring, resolve_signer_key, verify_detached
from .models import (
    CODE_SNAPSHOT_DIR,
    INPUT_DIR,
    MANIFEST_FILE,
    OUTPUT_DIR,
    SIGNATURE_FILE,
    TIMESTAMP_FILE,
    DetachedSignature,
    Manifest,
)
from .timestamping import (
    Rfc3161TimestampAuthority,
    is_local_token,
    local_token_time,
    rfc3161_token_matches,
    rfc3161_token_time,
    verify_local_token,
)
from .util import parse_utc_iso, sha256_bytes


class VerificationOutcome(str, Enum):
    """
    VALID: signature, content and timestamp all check out
    SIGNATURE_INVALID: manifest not authentically signed by a trusted key
    CONTENT_MISMATCH: files on disk differ from the manifest
    TIMESTAMP_INVALID: a token is present but does not cover this manifest
    TIMESTAMP_ABSENT: everything else is valid but no token exists, or the
        token cannot be authenticated (RFC 3161 without a TSA CA file)
    """
    VALID = "VALID"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    CONTENT_MISMATCH = "CONTENT_MISMATCH"
    TIMESTAMP_INVALID = "TIMESTAMP_INVALID"
    TIMESTAMP_ABSENT = "TIMESTAMP_ABSENT"


OUTCOME_PRECEDENCE = (
    VerificationOutcome.SIGNATURE_INVALID,
    VerificationOutcome.CONTENT_MISMATCH,
    VerificationOutcome.TIMESTAMP_INVALID,
    VerificationOutcome.TIMESTAMP_ABSENT,
)

# Report section name -> directory inside the experiment root
CONTENT_SECTIONS = (
    ("input", INPUT_DIR, "input_hashes"),
    ("output", OUTPUT_DIR, "output_hashes"),
    ("code", CODE_SNAPSHOT_DIR, "code_hashes"),
)


@dataclass
class CheckResult:
    name: str
    passed: bool
    outcome_on_failure: VerificationOutcome
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "detail": self.detail}


@dataclass
class VerificationReport:
    """Result of verifying one experiment directory."""
    outcome: VerificationOutcome
    location: str
    experiment_id: Optional[str] = None
    key_id: Optional[str] = None
    timestamped: bool = False
    checks: List[CheckResult] = field(default_factory=list)
    diffs: Dict[str, HashDiff] = field(default_factory=dict)

    def is_valid(self) -> bool:
        return self.outcome == VerificationOutcome.VALID

    def _collect(self, attr: str) -> List[str]:
        paths: List[str] = []
        for section, diff in self.diffs.items():
            paths.extend(f"{section}/{p}" for p in getattr(diff, attr))
        return paths

    @property
    def modified(self) -> List[str]:
        return self._collect("modified")

    @property
    def missing(self) -> List[str]:
        return self._collect("missing")

    @property
    def added(self) -> List[str]:
        return self._collect("added")

    @property
    def mismatched_paths(self) -> List[str]:
        return sorted(set(self.modified) | set(self.missing) | set(self.added))

    @property
    def problems(self) -> List[str]:
        return [f"{c.name}: {c.detail}" for c in self.checks if not c.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "location": self.location,
            "experiment_id": self.experiment_id,
            "key_id": self.key_id,
            "timestamped": self.timestamped,
            "checks": [c.to_dict() for c in self.checks],
            "modified": self.modified,
            "missing": self.missing,
            "added": self.added,
        }


def _decide(checks: List[CheckResult]) -> VerificationOutcome:
    failed = {c.outcome_on_failure for c in checks if not c.passed}
    for outcome in OUTCOME_PRECEDENCE:
        if outcome in failed:
            return outcome
    return VerificationOutcome.VALID


class IntegrityVerifier:
    """
    Read-side verifier; holds no per-experiment state and can be used
    concurrently.
    """

    def __init__(
        self,
        trust_store: Dict[str, Any],
        revocation_list: Optional[Dict[str, Any]] = None,
        rfc3161: Optional[Rfc3161TimestampAuthority] = None,
        follow_symlinks: bool = False,
    ):
        """
        Args:
            trust_store: signer_keys, signer_key_validity, timestamp_authority_keys
            revocation_list: revoked_kids and effective_at_epoch
            rfc3161: Authority used to check RFC 3161 tokens (no network access)
            follow_symlinks: Hashing policy; must match the one used at finalize
        """
        self.trust_store = trust_store
        self.revocation_list = revocation_list
        self.rfc3161 = rfc3161 or Rfc3161TimestampAuthority(DEFAULT_TSA_URL)
        self.follow_symlinks = follow_symlinks

    @classmethod
    def from_keyring(cls, keyring: Keyring, rfc3161: Optional[Rfc3161TimestampAuthority] = None,
                     follow_symlinks: bool = False) -> "IntegrityVerifier":
        return cls(
            trust_store=keyring.load_trust_store(),
            revocation_list=keyring.load_revocation_list(),
            rfc3161=rfc3161,
            follow_symlinks=follow_symlinks,
        )

    def verify_location(
        self,
        location: Union[str, Path],
        expected_experiment_id: Optional[str] = None,
    ) -> VerificationReport:
        """
        Verify a finalized experiment directory without the registry.

        Args:
            location: Experiment root
            expected_experiment_id: Registry id the manifest must be bound to

        Returns:
            VerificationReport
        """
        location = Path(location)
        report = VerificationReport(
            outcome=VerificationOutcome.VALID,
            location=str(location),
            experiment_id=expected_experiment_id,
        )

        manifest_file = location / MANIFEST_FILE
        if not manifest_file.is_file():
            report.checks.append(CheckResult(
                "manifest", False, VerificationOutcome.SIGNATURE_INVALID, f"{MANIFEST_FILE} not found"))
            report.outcome = _decide(report.checks)
            return report
        data = manifest_file.read_bytes()

        timestamp_check, trusted_time = self._check_timestamp(location, data, report)
        report.checks.append(self._check_signature(location, data, report, trusted_time))

        manifest = None
        try:
            manifest = Manifest.from_bytes(data)
        except (ValueError, ValidationError) as e:
            report.checks.append(CheckResult(
                "manifest", False, VerificationOutcome.CONTENT_MISMATCH, f"unparseable manifest: {e}"))

        if manifest is not None:
            if report.experiment_id is None:
                report.experiment_id = manifest.experiment_id
            if expected_experiment_id is not None:
                bound = manifest.experiment_id == expected_experiment_id
                report.checks.append(CheckResult(
                    "experiment_binding", bound, VerificationOutcome.CONTENT_MISMATCH,
                    "" if bound else f"manifest belongs to {manifest.experiment_id}"))
            for section, subdir, attr in CONTENT_SECTIONS:
                current = hash_directory(location / subdir, self.follow_symlinks)
                diff = compare_hashes(getattr(manifest, attr), current)
                report.diffs[section] = diff
                report.checks.append(CheckResult(
                    f"{section}_hashes", diff.clean, VerificationOutcome.CONTENT_MISMATCH,
                    "" if diff.clean else ", ".join(diff.paths(section))))

        report.checks.append(timestamp_check)
        report.outcome = _decide(report.checks)
        return report

    async def verify_location_async(
        self,
        location: Union[str, Path],
        expected_experiment_id: Optional[str] = None,
    ) -> VerificationReport:
        return await asyncio.to_thread(self.verify_location, location, expected_experiment_id)

    def _check_signature(self, location: Path, data: bytes, report: VerificationReport,
                         trusted_time: Optional[int]) -> CheckResult:
        def fail(detail: str) -> CheckResult:
            return CheckResult("signature", False, VerificationOutcome.SIGNATURE_INVALID, detail)

        sig_file = location / SIGNATURE_FILE
        if not sig_file.is_file():
            return fail(f"{SIGNATURE_FILE} not found")
        try:
            sig = DetachedSignature.from_dict(json.loads(sig_file.read_text(encoding="utf-8")))
            signed_at = int(parse_utc_iso(sig.signed_at).timestamp())
        except (ValueError, TypeError, AttributeError) as e:
            return fail(f"malformed signature file: {e}")
        report.key_id = sig.kid

        if sig.alg != "ed25519":
            return fail(f"unsupported algorithm {sig.alg}")
        pub, reason = resolve_signer_key(
            sig.kid, signed_at, self.trust_store, self.revocation_list, trusted_time_epoch=trusted_time)
        if pub is None:
            return fail(reason)
        if not verify_detached(sig, data, pub):
            return fail(f"signature does not verify under {sig.kid}")
        return CheckResult("signature", True, VerificationOutcome.SIGNATURE_INVALID)

    def _check_timestamp(self, location: Path, data: bytes,
                         report: VerificationReport) -> Tuple[CheckResult, Optional[int]]:
        """
        Returns:
            (check, trusted_time) where trusted_time is the token's time,
            set only when the token was authenticated
        """
        def result(passed: bool, outcome: VerificationOutcome, detail: str = "") -> CheckResult:
            return CheckResult("timestamp", passed, outcome, detail)

        token_file = location / TIMESTAMP_FILE
        if not token_file.is_file():
            return result(False, VerificationOutcome.TIMESTAMP_ABSENT, f"{TIMESTAMP_FILE} not found"), None
        token = token_file.read_bytes()
        digest = sha256_bytes(data)

        if is_local_token(token):
            if not verify_local_token(token, digest, self.trust_store.get("timestamp_authority_keys", {})):
                return result(False, VerificationOutcome.TIMESTAMP_INVALID, "token does not cover this manifest"), None
            report.timestamped = True
            return result(True, VerificationOutcome.TIMESTAMP_INVALID), local_token_time(token)

        if not rfc3161_token_matches(token, digest):
            return result(False, VerificationOutcome.TIMESTAMP_INVALID, "token does not cover this manifest"), None
        if not self.rfc3161.ca_file:
            return result(
                False, VerificationOutcome.TIMESTAMP_ABSENT,
                "RFC 3161 token not authenticated: no TSA CA file configured (SANDBOX_TSA_CA_FILE)"), None
        if not self.rfc3161.verify_token(token, digest):
            return result(False, VerificationOutcome.TIMESTAMP_INVALID, "token signature does not verify"), None
        report.timestamped = True
        return result(True, VerificationOutcome.TIMESTAMP_INVALID), rfc3161_token_time(token, digest)
