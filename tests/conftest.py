import sys
from pathlib import Path

import pytest

from immutable_sandbox.config import Settings
from immutable_sandbox.db import RegistryDatabase
from immutable_sandbox.errors import TimestampUnavailable
from immutable_sandbox.keys import Keyring, Signer
from immutable_sandbox.registry import ExperimentRegistry
from immutable_sandbox.sandbox import Sandbox
from immutable_sandbox.timestamping import LocalTimestampAuthority, TimestampAuthority

# Stands in for `pip freeze` so finalize does not depend on the host's packages
FREEZE_COMMAND = [sys.executable, "-c", "print('pkg==1.0')"]


class UnreachableTimestampAuthority(TimestampAuthority):
    name = "unreachable"

    def request_token(self, digest: bytes) -> bytes:
        raise TimestampUnavailable("Timestamp authority https://tsa.invalid unreachable: connection refused",
                                   step="timestamp")

    def verify_token(self, token: bytes, digest: bytes) -> bool:
        return False


class CrashingTimestampAuthority(TimestampAuthority):
    name = "crashing"

    def request_token(self, digest: bytes) -> bytes:
        raise ValueError("malformed response")

    def verify_token(self, token: bytes, digest: bytes) -> bool:
        return False


class BrokenSigner(Signer):
    def sign(self, payload: bytes):
        raise RuntimeError("hardware token removed")

    def get_kid(self) -> str:
        return "broken"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(home=tmp_path / "home", tsa_kind="local")


@pytest.fixture
def keyring(settings) -> Keyring:
    return Keyring.from_settings(settings)


@pytest.fixture
def identity(keyring) -> str:
    return keyring.provision_identity("Test Analyst", email="analyst@example.org")


@pytest.fixture
def local_tsa(settings, keyring) -> LocalTimestampAuthority:
    tsa = LocalTimestampAuthority(settings.local_tsa_key_path)
    keyring.register_timestamp_authority(tsa.kid, tsa.public_key_b64)
    return tsa


@pytest.fixture
def db(settings):
    database = RegistryDatabase(settings.registry_db)
    yield database
    database.close_connection()


@pytest.fixture
def registry(db) -> ExperimentRegistry:
    return ExperimentRegistry(db)


def make_sandbox(registry, keyring, tsa, **kwargs) -> Sandbox:
    kwargs.setdefault("freeze_command", FREEZE_COMMAND)
    return Sandbox(registry=registry, keyring=keyring, tsa=tsa, **kwargs)


@pytest.fixture
def sandbox(registry, keyring, local_tsa) -> Sandbox:
    return make_sandbox(registry, keyring, local_tsa)


@pytest.fixture
def input_source(tmp_path) -> Path:
    src = tmp_path / "raw"
    src.mkdir()
    (src / "a.csv").write_text("1,2,3")
    return src


@pytest.fixture
def exp_location(tmp_path) -> Path:
    return tmp_path / "exp1"
