"""
End-to-end lifecycle: create, open, finalize, verify.
"""

import asyncio
import json
import os
import sys
import time
import zipfile
from datetime import datetime, timezone

import pytest
import requests

from conftest import BrokenSigner, CrashingTimestampAuthority, UnreachableTimestampAuthority, make_sandbox
from immutable_sandbox import sandbox as sandbox_module
from immutable_sandbox.bundle import export_audit_bundle
from immutable_sandbox.errors import (
    AlreadyFinalized,
    DuplicateLocation,
    HashingIOError,
    InvalidTransition,
    NotFound,
    SandboxError,
    ScaffoldError,
    SigningFailed,
)
from immutable_sandbox.models import CODE_SNAPSHOT_DIR, ExperimentStatus
from immutable_sandbox.timestamping import Rfc3161TimestampAuthority, _der_integer, _der_tlv, message_imprint
from immutable_sandbox.util import sha256_bytes, sha256_hex, utc_iso_millis
from immutable_sandbox.verifier import VerificationOutcome


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def exp(sandbox, exp_location, input_source):
    return run(sandbox.create_experiment("exp1", exp_location, input_source))


@pytest.fixture
def finalized(sandbox, exp, identity):
    return run(sandbox.finalize(exp.id))


class TestCreate:

    def test_scaffold_layout(self, exp, exp_location):
        assert exp.status == ExperimentStatus.CREATED
        assert (exp_location / "input" / "a.csv").read_text() == "1,2,3"
        assert (exp_location / "output").is_dir()
        assert list((exp_location / "output").iterdir()) == []
        assert (exp_location / "README.md").exists()
        assert (exp_location / "requirements.txt").exists()

    def test_second_create_same_location(self, sandbox, exp, exp_location, input_source):
        with pytest.raises(DuplicateLocation):
            run(sandbox.create_experiment("exp1-again", exp_location, input_source))
        assert len(run(sandbox.list())) == 1

    @pytest.mark.parametrize("marker", ["output", ".devcontainer", ".provenance"])
    def test_prior_scaffolding_rejected(self, sandbox, exp_location, marker):
        (exp_location / marker).mkdir(parents=True)
        with pytest.raises(DuplicateLocation):
            run(sandbox.create_experiment("exp1", exp_location))
        assert run(sandbox.list()) == []

    def test_existing_manifest_rejected(self, sandbox, exp_location):
        exp_location.mkdir()
        (exp_location / "manifest.json").write_text("{}")
        with pytest.raises(DuplicateLocation):
            run(sandbox.create_experiment("exp1", exp_location))

    def test_failed_copy_rolls_back_record(self, sandbox, exp_location, tmp_path):
        with pytest.raises(ScaffoldError) as exc_info:
            run(sandbox.create_experiment("exp1", exp_location, tmp_path / "missing-source"))
        assert exc_info.value.state_changed is False
        assert run(sandbox.list()) == []
        assert not (exp_location / "output").exists()
        # location is clean again
        run(sandbox.create_experiment("exp1", exp_location))

    def test_create_without_input_source(self, sandbox, exp_location):
        exp = run(sandbox.create_experiment("exp1", exp_location))
        assert list((exp_location / "input").iterdir()) == []
        assert run(sandbox.get(exp.id)) == exp


class TestOpen:

    def test_open(self, sandbox, exp):
        opened = run(sandbox.open(exp.id))
        assert opened.status == ExperimentStatus.IN_PROGRESS
        assert run(sandbox.open(exp.id)).status == ExperimentStatus.IN_PROGRESS

    def test_open_unknown(self, sandbox):
        with pytest.raises(NotFound):
            run(sandbox.open("nope"))

    def test_open_completed_rejected(self, sandbox, finalized):
        with pytest.raises(InvalidTransition):
            run(sandbox.open(finalized.experiment.id))
        assert run(sandbox.get(finalized.experiment.id)).status == ExperimentStatus.COMPLETED


class TestFinalize:

    def test_empty_output_scenario(self, sandbox, exp, finalized, exp_location):
        manifest = finalized.manifest
        assert manifest.input_hashes == {"a.csv": sha256_hex("1,2,3")}
        assert manifest.output_hashes == {}
        assert manifest.experiment_id == exp.id
        assert manifest.environment_description.packages.strip() == "pkg==1.0"

        record = finalized.experiment
        assert record.status == ExperimentStatus.COMPLETED
        assert record.manifest_path == str(exp_location / "manifest.json")
        assert record.finalized_at is not None
        assert record.timestamped is True

        assert (exp_location / "manifest.json").read_bytes() == manifest.to_bytes()
        assert (exp_location / "manifest.json.sig").exists()
        assert (exp_location / "manifest.tsr").exists()
        assert finalized.warnings == []

        report = run(sandbox.verify(exp.id))
        assert report.outcome == VerificationOutcome.VALID
        assert report.is_valid()
        assert all(c.passed for c in report.checks)

    def test_finalize_from_created_and_in_progress(self, sandbox, exp, identity):
        run(sandbox.open(exp.id))
        result = run(sandbox.finalize(exp.id))
        assert result.experiment.status == ExperimentStatus.COMPLETED

    def test_outputs_and_code_recorded(self, sandbox, exp, identity, exp_location):
        (exp_location / "output" / "result.txt").write_text("42")
        (exp_location / "analysis.py").write_text("print(42)\n")
        result = run(sandbox.finalize(exp.id))
        assert result.manifest.output_hashes == {"result.txt": sha256_hex("42")}
        assert result.manifest.code_hashes == {"analysis.py": sha256_hex("print(42)\n")}

    def test_second_finalize_rejected_and_manifest_unchanged(self, sandbox, exp, finalized, exp_location):
        before = (exp_location / "manifest.json").read_bytes()
        sig_before = (exp_location / "manifest.json.sig").read_bytes()
        (exp_location / "output" / "late.txt").write_text("late")
        with pytest.raises(AlreadyFinalized):
            run(sandbox.finalize(exp.id))
        assert (exp_location / "manifest.json").read_bytes() == before
        assert (exp_location / "manifest.json.sig").read_bytes() == sig_before
        assert run(sandbox.get(exp.id)) == finalized.experiment

    def test_timestamp_unreachable_completes_with_warning(self, registry, keyring, identity, exp_location,
                                                         input_source):
        sandbox = make_sandbox(registry, keyring, UnreachableTimestampAuthority())
        exp = run(sandbox.create_experiment("exp1", exp_location, input_source))
        result = run(sandbox.finalize(exp.id))

        assert result.experiment.status == ExperimentStatus.COMPLETED
        assert result.experiment.timestamped is False
        assert (exp_location / "manifest.json").exists()
        assert (exp_location / "manifest.json.sig").exists()
        assert not (exp_location / "manifest.tsr").exists()
        assert any("Trusted timestamp not obtained" in w for w in result.warnings)

        report = run(sandbox.verify(exp.id))
        assert report.outcome == VerificationOutcome.TIMESTAMP_ABSENT

    def test_no_identity_fails_and_keeps_state(self, sandbox, exp, exp_location):
        with pytest.raises(SigningFailed) as exc_info:
            run(sandbox.finalize(exp.id))
        err = exc_info.value
        assert err.step == "sign"
        assert err.state_changed is False
        assert err.experiment_id == exp.id
        assert "step=sign" in str(err)
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.CREATED
        assert not (exp_location / "manifest.json.sig").exists()

    def test_retry_after_provisioning(self, sandbox, exp):
        with pytest.raises(SigningFailed):
            run(sandbox.finalize(exp.id))
        result = run(sandbox.finalize(exp.id, provision_identity=True, identity_name="Ada"))
        assert result.experiment.status == ExperimentStatus.COMPLETED
        assert result.attestation.key_id.startswith("ada-")
        assert len(result.notices) == 1
        assert "Provisioned new signing identity" in result.notices[0]
        assert sandbox.keyring.current_identity() == result.attestation.key_id

    def test_signer_failure_keeps_manifest_for_inspection(self, registry, keyring, local_tsa, exp_location,
                                                          input_source):
        sandbox = make_sandbox(registry, keyring, local_tsa, signer=BrokenSigner())
        exp = run(sandbox.create_experiment("exp1", exp_location, input_source))
        run(sandbox.open(exp.id))
        with pytest.raises(SigningFailed):
            run(sandbox.finalize(exp.id))
        assert (exp_location / "manifest.json").exists()
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.IN_PROGRESS

    def test_hashing_failure_names_step(self, sandbox, exp, identity, monkeypatch):
        async def unreadable(root, follow_symlinks=False):
            raise HashingIOError(f"Cannot read {root}/a.csv: Permission denied", path=f"{root}/a.csv")

        monkeypatch.setattr(sandbox_module, "hash_directory_async", unreadable)
        with pytest.raises(HashingIOError) as exc_info:
            run(sandbox.finalize(exp.id))
        assert exc_info.value.step == "hash_inputs"
        assert exc_info.value.state_changed is False
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.CREATED

        monkeypatch.undo()
        assert run(sandbox.finalize(exp.id)).experiment.status == ExperimentStatus.COMPLETED

    @pytest.mark.skipif(sys.platform != "linux", reason="needs a filesystem that accepts arbitrary name bytes")
    def test_undecodable_input_name_keeps_state(self, sandbox, exp, identity, exp_location):
        bad = exp_location / "input" / os.fsdecode(b"\xff.csv")
        bad.write_bytes(b"x")
        with pytest.raises(HashingIOError) as exc_info:
            run(sandbox.finalize(exp.id))
        assert exc_info.value.step == "hash_inputs"
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.CREATED

        bad.unlink()
        assert run(sandbox.finalize(exp.id)).experiment.status == ExperimentStatus.COMPLETED

    def test_unexpected_failure_is_typed_and_releases_lease(self, sandbox, exp, identity, monkeypatch):
        def broken_manifest(**kwargs):
            raise RuntimeError("environment record is not serializable")

        monkeypatch.setattr(sandbox_module, "build_manifest", broken_manifest)
        with pytest.raises(SandboxError) as exc_info:
            run(sandbox.finalize(exp.id))
        err = exc_info.value
        assert type(err) is SandboxError
        assert err.step == "manifest"
        assert err.state_changed is False
        assert "RuntimeError" in err.message
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.CREATED

        monkeypatch.undo()
        assert run(sandbox.finalize(exp.id)).experiment.status == ExperimentStatus.COMPLETED

    def test_cancelled_finalize_releases_lease(self, sandbox, exp, identity, monkeypatch):
        async def cancelled(root, follow_symlinks=False):
            raise asyncio.CancelledError()

        run(sandbox.open(exp.id))
        monkeypatch.setattr(sandbox_module, "hash_directory_async", cancelled)
        with pytest.raises(asyncio.CancelledError):
            run(sandbox.finalize(exp.id))
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.IN_PROGRESS

        monkeypatch.undo()
        assert run(sandbox.finalize(exp.id)).experiment.status == ExperimentStatus.COMPLETED

    def test_timestamp_authority_crash_completes_with_warning(self, registry, keyring, identity, exp_location,
                                                             input_source):
        sandbox = make_sandbox(registry, keyring, CrashingTimestampAuthority())
        exp = run(sandbox.create_experiment("exp1", exp_location, input_source))
        result = run(sandbox.finalize(exp.id))
        assert result.experiment.status == ExperimentStatus.COMPLETED
        assert result.experiment.timestamped is False
        assert any("ValueError" in w for w in result.warnings)

    def test_concurrent_finalize_same_experiment(self, sandbox, exp, identity):
        async def both():
            return await asyncio.gather(
                sandbox.finalize(exp.id), sandbox.finalize(exp.id), return_exceptions=True
            )

        results = run(both())
        errors = [r for r in results if isinstance(r, Exception)]
        done = [r for r in results if not isinstance(r, Exception)]
        assert len(done) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidTransition)
        assert run(sandbox.get(exp.id)).status == ExperimentStatus.COMPLETED

    def test_concurrent_finalize_different_experiments(self, sandbox, identity, tmp_path, input_source):
        async def scenario():
            exps = [
                await sandbox.create_experiment(f"exp{i}", tmp_path / f"exp{i}", input_source)
                for i in range(3)
            ]
            return await asyncio.gather(*(sandbox.finalize(e.id) for e in exps))

        results = run(scenario())
        assert [r.experiment.status for r in results] == [ExperimentStatus.COMPLETED] * 3
        assert len({r.manifest.experiment_id for r in results}) == 3


class TestVerify:

    def test_verify_requires_completed(self, sandbox, exp):
        with pytest.raises(InvalidTransition):
            run(sandbox.verify(exp.id))

    def test_modified_input_byte(self, sandbox, finalized, exp_location):
        (exp_location / "input" / "a.csv").write_text("1,2,4")
        report = run(sandbox.verify(finalized.experiment.id))
        assert report.outcome == VerificationOutcome.CONTENT_MISMATCH
        assert report.modified == ["input/a.csv"]
        assert report.mismatched_paths == ["input/a.csv"]

    def test_added_and_missing_files(self, sandbox, finalized, exp_location):
        (exp_location / "input" / "a.csv").unlink()
        (exp_location / "output" / "extra.txt").write_text("x")
        report = run(sandbox.verify(finalized.experiment.id))
        assert report.outcome == VerificationOutcome.CONTENT_MISMATCH
        assert report.missing == ["input/a.csv"]
        assert report.added == ["output/extra.txt"]

    def test_modified_output_byte(self, sandbox, exp, identity, exp_location):
        (exp_location / "output" / "result.txt").write_text("42")
        run(sandbox.finalize(exp.id))
        (exp_location / "output" / "result.txt").write_text("43")
        report = run(sandbox.verify(exp.id))
        assert report.outcome == VerificationOutcome.CONTENT_MISMATCH
        assert report.mismatched_paths == ["output/result.txt"]

    def test_tampered_code_snapshot(self, sandbox, exp, identity, exp_location):
        (exp_location / "analysis.py").write_text("print(42)\n")
        run(sandbox.finalize(exp.id))
        (exp_location / CODE_SNAPSHOT_DIR / "analysis.py").write_text("print(43)\n")
        report = run(sandbox.verify(exp.id))
        assert report.outcome == VerificationOutcome.CONTENT_MISMATCH
        assert report.mismatched_paths == ["code/analysis.py"]

    def test_hidden_files_do_not_affect_verification(self, sandbox, finalized, exp_location):
        (exp_location / "input" / ".DS_Store").write_bytes(b"junk")
        assert run(sandbox.verify(finalized.experiment.id)).outcome == VerificationOutcome.VALID

    def test_other_identity_is_signature_invalid(self, sandbox, finalized, keyring, exp_location):
        other = keyring.provision_identity("Someone Else")
        sig_file = exp_location / "manifest.json.sig"
        sig = json.loads(sig_file.read_text())
        sig["kid"] = other
        sig_file.write_text(json.dumps(sig))
        report = run(sandbox.verify(finalized.experiment.id))
        assert report.outcome == VerificationOutcome.SIGNATURE_INVALID

    def test_unknown_identity_fails_closed(self, sandbox, finalized, exp_location):
        sig_file = exp_location / "manifest.json.sig"
        sig = json.loads(sig_file.read_text())
        sig["kid"] = "nobody-0000000000000000"
        sig_file.write_text(json.dumps(sig))
        assert run(sandbox.verify(finalized.experiment.id)).outcome == VerificationOutcome.SIGNATURE_INVALID

    def test_revoked_identity_fails_closed(self, sandbox, finalized, keyring, identity):
        keyring.revoke(identity, effective_at_epoch=0)
        assert run(sandbox.verify(finalized.experiment.id)).outcome == VerificationOutcome.SIGNATURE_INVALID

    def test_missing_signature(self, sandbox, finalized, exp_location):
        (exp_location / "manifest.json.sig").unlink()
        assert run(sandbox.verify(finalized.experiment.id)).outcome == VerificationOutcome.SIGNATURE_INVALID

    def test_tampered_manifest_takes_precedence(self, sandbox, finalized, exp_location):
        manifest_file = exp_location / "manifest.json"
        data = json.loads(manifest_file.read_text())
        data["input_hashes"]["a.csv"] = "0" * 64
        manifest_file.write_text(json.dumps(data, sort_keys=True, indent=2) + "\n")
        report = run(sandbox.verify(finalized.experiment.id))
        assert report.outcome == VerificationOutcome.SIGNATURE_INVALID
        # every check is still reported
        names = {c.name: c.passed for c in report.checks}
        assert names["signature"] is False
        assert names["input_hashes"] is False
        assert names["timestamp"] is False

    def test_invalid_timestamp_token(self, sandbox, finalized, exp_location, local_tsa):
        (exp_location / "manifest.tsr").write_bytes(local_tsa.request_token(sha256_bytes(b"another manifest")))
        assert run(sandbox.verify(finalized.experiment.id)).outcome == VerificationOutcome.TIMESTAMP_INVALID

    def test_content_mismatch_beats_timestamp(self, sandbox, finalized, exp_location):
        (exp_location / "manifest.tsr").unlink()
        (exp_location / "input" / "a.csv").write_text("changed")
        assert run(sandbox.verify(finalized.experiment.id)).outcome == VerificationOutcome.CONTENT_MISMATCH

    def test_manifest_bound_to_experiment(self, sandbox, identity, tmp_path, input_source):
        first = run(sandbox.create_experiment("a", tmp_path / "a", input_source))
        second = run(sandbox.create_experiment("b", tmp_path / "b", input_source))
        run(sandbox.finalize(first.id))
        run(sandbox.finalize(second.id))
        for name in ("manifest.json", "manifest.json.sig", "manifest.tsr"):
            (tmp_path / "b" / name).write_bytes((tmp_path / "a" / name).read_bytes())
        report = run(sandbox.verify(second.id))
        assert report.outcome == VerificationOutcome.CONTENT_MISMATCH
        assert "experiment_binding" in {c.name for c in report.checks if not c.passed}

    def test_verification_is_repeatable(self, sandbox, finalized):
        first = run(sandbox.verify(finalized.experiment.id))
        second = run(sandbox.verify(finalized.experiment.id))
        assert first.to_dict() == second.to_dict()

    def test_concurrent_verification(self, sandbox, finalized):
        exp_id = finalized.experiment.id
        before = run(sandbox.get(exp_id))

        async def many():
            return await asyncio.gather(*(sandbox.verify(exp_id) for _ in range(5)))

        reports = run(many())
        assert all(r.outcome == VerificationOutcome.VALID for r in reports)
        assert all(r.to_dict() == reports[0].to_dict() for r in reports)
        assert run(sandbox.get(exp_id)) == before

    def test_backdated_signing_time_is_signature_invalid(self, sandbox, finalized, keyring, identity,
                                                         exp_location):
        keyring.revoke(identity, effective_at_epoch=int(time.time()))
        not_before = keyring.load_trust_store()["signer_key_validity"][identity]["not_before_epoch"]
        sig_file = exp_location / "manifest.json.sig"
        sig = json.loads(sig_file.read_text())
        sig["signed_at"] = utc_iso_millis(datetime.fromtimestamp(not_before, timezone.utc))
        sig_file.write_text(json.dumps(sig))

        report = run(sandbox.verify(finalized.experiment.id))
        assert report.outcome == VerificationOutcome.SIGNATURE_INVALID
        assert {c.name: c.passed for c in report.checks}["signature"] is False

    def test_forged_rfc3161_token_is_not_valid(self, registry, keyring, identity, exp_location, input_source):
        sandbox = make_sandbox(registry, keyring, UnreachableTimestampAuthority())
        exp = run(sandbox.create_experiment("exp1", exp_location, input_source))
        run(sandbox.finalize(exp.id))
        digest = sha256_bytes((exp_location / "manifest.json").read_bytes())
        forged = _der_tlv(0x30, _der_tlv(0x30, _der_integer(0)) + message_imprint(digest))
        (exp_location / "manifest.tsr").write_bytes(forged)

        report = run(sandbox.verify(exp.id))
        assert report.outcome == VerificationOutcome.TIMESTAMP_ABSENT
        assert report.timestamped is False
        assert "not authenticated" in {c.name: c.detail for c in report.checks}["timestamp"]

    def test_rfc3161_token_failing_ca_check_is_invalid(self, registry, keyring, identity, exp_location,
                                                       input_source, tmp_path, monkeypatch):
        class DownSession:
            def post(self, url, data=None, headers=None, timeout=None):
                raise requests.ConnectionError("connection refused")

        tsa = Rfc3161TimestampAuthority("https://tsa.invalid/tsr", ca_file=tmp_path / "ca.pem",
                                        session=DownSession())
        sandbox = make_sandbox(registry, keyring, tsa)
        exp = run(sandbox.create_experiment("exp1", exp_location, input_source))
        run(sandbox.finalize(exp.id))
        digest = sha256_bytes((exp_location / "manifest.json").read_bytes())
        forged = _der_tlv(0x30, _der_tlv(0x30, _der_integer(0)) + message_imprint(digest))
        (exp_location / "manifest.tsr").write_bytes(forged)
        monkeypatch.setattr(tsa, "_openssl_verify", lambda token, digest: False)

        assert run(sandbox.verify(exp.id)).outcome == VerificationOutcome.TIMESTAMP_INVALID

    def test_offline_verification_of_directory(self, sandbox, finalized, exp_location):
        report = run(sandbox.verify_location(exp_location))
        assert report.outcome == VerificationOutcome.VALID
        assert report.experiment_id == finalized.experiment.id

    def test_offline_verification_without_manifest(self, sandbox, tmp_path):
        report = run(sandbox.verify_location(tmp_path))
        assert report.outcome == VerificationOutcome.SIGNATURE_INVALID


class TestRemoveAndExport:

    def test_remove_keeps_files(self, sandbox, finalized, exp_location):
        run(sandbox.remove(finalized.experiment.id))
        with pytest.raises(NotFound):
            run(sandbox.get(finalized.experiment.id))
        assert (exp_location / "manifest.json").exists()
        # files remain verifiable offline
        assert run(sandbox.verify_location(exp_location)).outcome == VerificationOutcome.VALID

    def test_export_bundle(self, sandbox, finalized, exp_location, tmp_path):
        report = run(sandbox.verify(finalized.experiment.id))
        out = export_audit_bundle(exp_location, sandbox.keyring, tmp_path / "bundles", report=report)
        with zipfile.ZipFile(out) as z:
            names = set(z.namelist())
            assert {"manifest.json", "manifest.json.sig", "manifest.tsr", "trust_store.json",
                    "verification_report.json"} <= names
            assert z.read("manifest.json") == (exp_location / "manifest.json").read_bytes()
            assert json.loads(z.read("verification_report.json"))["outcome"] == "VALID"
