import asyncio
import runpy
import sys
import zipfile
from pathlib import Path

import pytest

TOOL = Path(__file__).resolve().parent.parent / "tools" / "export_audit_bundle.py"


def test_export_audit_bundle_tool(sandbox, settings, identity, exp_location, input_source, tmp_path,
                                  monkeypatch, capsys):
    exp = asyncio.run(sandbox.create_experiment("exp1", exp_location, input_source))
    asyncio.run(sandbox.finalize(exp.id))

    monkeypatch.setenv("SANDBOX_HOME", str(settings.home))
    monkeypatch.setattr(sys, "argv", [str(TOOL), str(exp_location), str(tmp_path / "out")])
    runpy.run_path(str(TOOL), run_name="__main__")

    captured = capsys.readouterr()
    bundle = Path(captured.out.strip())
    assert bundle.parent == tmp_path / "out"
    assert captured.err.strip().splitlines()[-1] == "VALID"
    with zipfile.ZipFile(bundle) as z:
        assert "manifest.json.sig" in z.namelist()


def test_export_audit_bundle_tool_usage(monkeypatch):
    monkeypatch.setattr(sys, "argv", [str(TOOL)])
    with pytest.raises(SystemExit) as exc_info:
        runpy.run_path(str(TOOL), run_name="__main__")
    assert exc_info.value.code == 2
