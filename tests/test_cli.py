import json
import logging

import pytest

from immutable_sandbox import cli


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SANDBOX_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("SANDBOX_TSA", "local")
    monkeypatch.delenv("SANDBOX_DEBUG", raising=False)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def invoke(capsys, *argv):
    code = cli.run(list(argv))
    captured = capsys.readouterr()
    out = json.loads(captured.out) if captured.out.strip() else None
    return code, out, captured.err


def test_identity_lifecycle(capsys):
    code, _, err = invoke(capsys, "identity", "show")
    assert code == cli.EXIT_ERROR
    assert "No signing identity" in err

    code, out, _ = invoke(capsys, "identity", "init", "--name", "Ada Lovelace")
    assert code == cli.EXIT_OK
    assert out["kid"].startswith("ada-lovelace-")

    code, _, err = invoke(capsys, "identity", "init", "--name", "Someone")
    assert code == cli.EXIT_ERROR
    assert "--force" in err

    code, out, _ = invoke(capsys, "identity", "show")
    assert code == cli.EXIT_OK
    assert out["name"] == "Ada Lovelace"


def test_config(capsys, tmp_path):
    code, out, _ = invoke(capsys, "config")
    assert code == cli.EXIT_OK
    assert out["home"] == str(tmp_path / "home")
    assert out["tsa"] == "local"
    assert out["files"]["identity"] is False
    assert out["experiments"] is None

    invoke(capsys, "create", "exp1", str(tmp_path / "exp1"))
    _, out, _ = invoke(capsys, "config")
    assert out["experiments"] == {"CREATED": 1, "IN_PROGRESS": 0, "COMPLETED": 0}


def test_create_finalize_verify(capsys, tmp_path):
    src = tmp_path / "raw"
    src.mkdir()
    (src / "a.csv").write_text("1,2,3")
    location = tmp_path / "exp1"

    invoke(capsys, "identity", "init", "--name", "Ada")
    code, exp, _ = invoke(capsys, "create", "exp1", str(location), "--input", str(src))
    assert code == cli.EXIT_OK
    assert exp["status"] == "CREATED"

    code, result, _ = invoke(capsys, "finalize", exp["id"])
    assert code == cli.EXIT_OK
    assert result["experiment"]["status"] == "COMPLETED"
    assert (location / "manifest.json").exists()

    code, report, err = invoke(capsys, "verify", exp["id"])
    assert code == cli.EXIT_OK
    assert report["outcome"] == "VALID"
    assert "✓ VALID" in err

    (location / "input" / "a.csv").write_text("1,2,4")
    code, report, err = invoke(capsys, "verify-dir", str(location))
    assert code == cli.EXIT_NOT_VALID
    assert report["outcome"] == "CONTENT_MISMATCH"
    assert report["modified"] == ["input/a.csv"]

    code, _, err = invoke(capsys, "finalize", exp["id"])
    assert code == cli.EXIT_ERROR
    assert "ALREADY_FINALIZED" in err

    code, listed, _ = invoke(capsys, "list")
    assert [e["id"] for e in listed] == [exp["id"]]


def test_export(capsys, tmp_path):
    location = tmp_path / "exp1"
    invoke(capsys, "identity", "init", "--name", "Ada")
    _, exp, _ = invoke(capsys, "create", "exp1", str(location))
    invoke(capsys, "finalize", exp["id"])

    code, out, _ = invoke(capsys, "export", exp["id"], "--out", str(tmp_path / "bundles"))
    assert code == cli.EXIT_OK
    assert out["outcome"] == "VALID"
    assert out["bundle"].endswith(".zip")


def test_unknown_experiment(capsys):
    code, out, err = invoke(capsys, "open", "missing")
    assert code == cli.EXIT_ERROR
    assert out is None
    assert "NOT_FOUND" in err


def test_remove_keeps_directory(capsys, tmp_path):
    location = tmp_path / "exp1"
    _, exp, _ = invoke(capsys, "create", "exp1", str(location))
    code, out, _ = invoke(capsys, "remove", exp["id"])
    assert code == cli.EXIT_OK
    assert out["removed"]["id"] == exp["id"]
    assert (location / "input").is_dir()
    _, listed, _ = invoke(capsys, "list")
    assert listed == []
