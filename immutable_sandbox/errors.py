"""
Error types for Immutable Sandbox.

Every error carries the pipeline step that failed and whether the
experiment's registry state changed, so callers can always report both.
Verification outcomes (content mismatch, bad signature, bad or missing
timestamp) are not errors; see ``immutable_sandbox.verifier``.
"""

from typing import Optional


class SandboxError(Exception):
    """Base class for all Immutable Sandbox failures."""

    code = "SANDBOX_ERROR"

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        state_changed: bool = False,
        experiment_id: Optional[str] = None,
    ):
        self.message = message
        self.step = step
        self.state_changed = state_changed
        self.experiment_id = experiment_id
        super().__init__(message)

    def __str__(self) -> str:
        step = self.step or "n/a"
        changed = "changed" if self.state_changed else "unchanged"
        return f"[{self.code}] step={step}: {self.message} (experiment state {changed})"

    def to_dict(self):
        return {
            "error": self.code,
            "step": self.step,
            "state_changed": self.state_changed,
            "experiment_id": self.experiment_id,
            "detail": self.message,
        }


class DuplicateLocation(SandboxError):
    """The location is already registered or already holds a scaffolded experiment."""
    code = "DUPLICATE_LOCATION"


class NotFound(SandboxError):
    code = "NOT_FOUND"


class InvalidTransition(SandboxError):
    """The requested lifecycle transition is not allowed from the current status."""
    code = "INVALID_TRANSITION"


class AlreadyFinalized(InvalidTransition):
    code = "ALREADY_FINALIZED"


class HashingIOError(SandboxError):
    """A file could not be read while hashing a directory tree."""
    code = "HASHING_IO_ERROR"

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        self.path = path
        super().__init__(message, **kwargs)


class ScaffoldError(SandboxError):
    code = "SCAFFOLD_ERROR"


class SigningFailed(SandboxError):
    """Fatal to finalize: no signature, no terminal transition."""
    code = "SIGNING_FAILED"


class TimestampUnavailable(SandboxError):
    """Non-fatal: finalize continues without a timestamp token."""
    code = "TIMESTAMP_UNAVAILABLE"
