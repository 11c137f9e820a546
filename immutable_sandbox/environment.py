"""
Environment and code snapshotting.

Captures the dependency set (``pip freeze``) and interpreter/platform
details in effect at finalization, and copies analysis source files into
the experiment's code snapshot directory.
"""

import asyncio
import logging
import os
import platform
import shutil
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .hashing import HIDDEN_PREFIX, hash_directory
from .models import CODE_SNAPSHOT_DIR, INPUT_DIR, OUTPUT_DIR, EnvironmentDescription

logger = logging.getLogger(__name__)

FREEZE_TIMEOUT_SECONDS = 120

# Never descended into when collecting code
TOP_LEVEL_EXCLUDED_DIRS = frozenset({INPUT_DIR, OUTPUT_DIR})
EXCLUDED_DIRS = frozenset({"node_modules", "__pycache__"})


def default_freeze_command(location: Path) -> List[str]:
    """
    Prefer the sandbox's own virtualenv, fall back to the running interpreter.
    """
    venv_python = location / ".venv" / "bin" / "python"
    if venv_python.exists():
        return [str(venv_python), "-m", "pip", "freeze"]
    return [sys.executable, "-m", "pip", "freeze"]


async def capture_packages(location: Path, command: Optional[Sequence[str]] = None) -> str:
    """
    Run ``pip freeze`` inside the experiment root.

    Raises:
        RuntimeError: the command could not be run or exited non-zero
    """
    command = list(command or default_freeze_command(location))
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(location),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RuntimeError(f"cannot run {command[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=FREEZE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise RuntimeError(f"{' '.join(command)} timed out after {FREEZE_TIMEOUT_SECONDS}s")

    if proc.returncode != 0:
        raise RuntimeError(
            f"{' '.join(command)} exited with {proc.returncode}: {stderr.decode('utf-8', 'replace').strip()}"
        )
    return stdout.decode("utf-8", "replace")


async def capture_environment(
    location: Path,
    image_id: str = "",
    freeze_command: Optional[Sequence[str]] = None,
) -> EnvironmentDescription:
    """
    Describe the runtime environment.

    A failed package capture is recorded in ``capture_errors`` rather
    than raised; an incomplete description is still evidence.
    """
    errors: List[str] = []
    try:
        packages = await capture_packages(location, freeze_command)
    except RuntimeError as e:
        logger.warning("pip freeze failed in %s: %s", location, e)
        packages = ""
        errors.append(f"Error capturing pip freeze: {e}")

    return EnvironmentDescription(
        python_version=platform.python_version(),
        python_implementation=platform.python_implementation(),
        platform=platform.platform(),
        system_info=image_id,
        packages=packages,
        capture_errors=errors,
    )


def _iter_code_files(location: Path, extensions: Iterable[str]) -> Iterable[Path]:
    extensions = tuple(extensions)
    for dirpath, dirnames, filenames in os.walk(location, followlinks=False):
        rel_dir = Path(dirpath).relative_to(location)
        # prune in place so os.walk does not descend
        dirnames[:] = sorted(
            d for d in dirnames
            if not d.startswith(HIDDEN_PREFIX)
            and d not in EXCLUDED_DIRS
            and not (rel_dir == Path(".") and d in TOP_LEVEL_EXCLUDED_DIRS)
        )
        for name in sorted(filenames):
            if name.startswith(HIDDEN_PREFIX) or not name.endswith(extensions):
                continue
            path = Path(dirpath) / name
            if path.is_symlink():
                continue
            yield path


def snapshot_code(location: Path, extensions: Sequence[str]) -> Dict[str, str]:
    """
    Copy source files into the code snapshot directory and hash them.

    The snapshot directory is rebuilt from scratch on every call so a
    retried finalize never mixes files from two attempts.

    Returns:
        Mapping of snapshot-relative path -> hex digest
    """
    location = Path(location)
    snapshot_dir = location / CODE_SNAPSHOT_DIR
    if snapshot_dir.exists():
        shutil.rmtree(snapshot_dir)
    snapshot_dir.mkdir(parents=True)

    for src in _iter_code_files(location, extensions):
        dest = snapshot_dir / src.relative_to(location)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)

    return hash_directory(snapshot_dir)


async def snapshot_code_async(location: Path, extensions: Sequence[str]) -> Dict[str, str]:
    return await asyncio.to_thread(snapshot_code, location, extensions)
