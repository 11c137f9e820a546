"""
Configuration module for Immutable Sandbox.

Centralizes all configuration with environment variable support
and validation. Components take explicit paths; ``Settings.from_env()``
supplies the defaults used by the CLI and the HTTP app.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

# ============================================================
# Defaults
# ============================================================

DEFAULT_HOME = Path.home() / ".immutable-sandbox"

DEFAULT_TSA_URL = "https://freetsa.org/tsr"
DEFAULT_TSA_TIMEOUT = 15.0

DEFAULT_CODE_EXTENSIONS = (".py", ".ipynb", ".R")

# A finalize that has not finished within this window is treated as crashed
DEFAULT_FINALIZE_LEASE_SECONDS = 900

TSA_KINDS = ("rfc3161", "local", "none")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_extensions(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return DEFAULT_CODE_EXTENSIONS
    exts = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            exts.append(part if part.startswith(".") else "." + part)
    return tuple(exts)


@dataclass
class Settings:
    """Resolved configuration for one Sandbox instance."""

    home: Path = DEFAULT_HOME
    registry_db: Optional[Path] = None
    keyring_dir: Optional[Path] = None
    trust_store_path: Optional[Path] = None
    revocation_list_path: Optional[Path] = None
    identity_path: Optional[Path] = None

    tsa_kind: str = "rfc3161"
    tsa_url: str = DEFAULT_TSA_URL
    tsa_timeout: float = DEFAULT_TSA_TIMEOUT
    tsa_ca_file: Optional[Path] = None

    follow_symlinks: bool = False
    code_extensions: Tuple[str, ...] = DEFAULT_CODE_EXTENSIONS
    finalize_lease_seconds: int = DEFAULT_FINALIZE_LEASE_SECONDS
    image_id: str = ""

    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self):
        self.home = Path(self.home)
        if self.registry_db is None:
            self.registry_db = self.home / "registry.db"
        if self.keyring_dir is None:
            self.keyring_dir = self.home / "keys"
        if self.trust_store_path is None:
            self.trust_store_path = self.home / "trust" / "trust_store.json"
        if self.revocation_list_path is None:
            self.revocation_list_path = self.home / "trust" / "revocation_list.json"
        if self.identity_path is None:
            self.identity_path = self.home / "identity.json"
        if self.tsa_kind not in TSA_KINDS:
            raise ValueError(f"Unknown timestamp authority kind: {self.tsa_kind!r} (expected one of {TSA_KINDS})")

    @property
    def local_tsa_key_path(self) -> Path:
        return Path(self.keyring_dir) / "tsa" / "local_tsa_key.json"

    @classmethod
    def from_env(cls) -> "Settings":
        home = Path(os.getenv("SANDBOX_HOME", str(DEFAULT_HOME))).expanduser()

        def _path(name: str) -> Optional[Path]:
            raw = os.getenv(name)
            return Path(raw).expanduser() if raw else None

        return cls(
            home=home,
            registry_db=_path("SANDBOX_REGISTRY_DB"),
            keyring_dir=_path("SANDBOX_KEYRING_DIR"),
            trust_store_path=_path("SANDBOX_TRUST_STORE"),
            revocation_list_path=_path("SANDBOX_REVOCATION_LIST"),
            identity_path=_path("SANDBOX_IDENTITY_PATH"),
            tsa_kind=os.getenv("SANDBOX_TSA", "rfc3161"),
            tsa_url=os.getenv("SANDBOX_TSA_URL", DEFAULT_TSA_URL),
            tsa_timeout=float(os.getenv("SANDBOX_TSA_TIMEOUT", str(DEFAULT_TSA_TIMEOUT))),
            tsa_ca_file=_path("SANDBOX_TSA_CA_FILE"),
            follow_symlinks=_env_bool("SANDBOX_FOLLOW_SYMLINKS", False),
            code_extensions=_env_extensions("SANDBOX_CODE_EXTENSIONS"),
            finalize_lease_seconds=int(
                os.getenv("SANDBOX_FINALIZE_LEASE_SECONDS", str(DEFAULT_FINALIZE_LEASE_SECONDS))
            ),
            image_id=os.getenv("SANDBOX_IMAGE_ID", ""),
            log_level=os.getenv("SANDBOX_LOG_LEVEL", "INFO"),
            log_json=_env_bool("SANDBOX_LOG_JSON", True),
        )


# ============================================================
# Validation
# ============================================================

def validate_config(settings: Settings) -> Dict[str, bool]:
    """
    Report which configured files exist.
    Returns dict of name -> exists.
    """
    paths = {
        "registry_db": settings.registry_db,
        "trust_store": settings.trust_store_path,
        "revocation_list": settings.revocation_list_path,
        "identity": settings.identity_path,
    }
    if settings.tsa_kind == "local":
        paths["local_tsa_key"] = settings.local_tsa_key_path
    return {name: Path(path).exists() for name, path in paths.items()}


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("SANDBOX_DEBUG", "").lower() in ("1", "true", "yes")
