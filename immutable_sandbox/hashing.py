"""
Immutable Sandbox Content Hashing

Computes deterministic per-file SHA-256 digests for a directory tree.
All digests are lowercase hexadecimal; paths are relative POSIX paths.
"""

import asyncio
import hashlib
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Union

from .errors import HashingIOError

CHUNK_SIZE = 64 * 1024

# Entries whose name starts with this marker are hidden/system files
HIDDEN_PREFIX = "."


def sha256_file(path: Union[str, Path]) -> str:
    """
    Stream a file through SHA-256.

    Raises:
        HashingIOError: the file could not be opened or read
    """
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
    except OSError as e:
        raise HashingIOError(f"Cannot read {path}: {e.strerror or e}", path=str(path)) from e
    return h.hexdigest()


def hash_directory(root: Union[str, Path], follow_symlinks: bool = False) -> Dict[str, str]:
    """
    Hash every regular file below ``root``.

    Policy:
    - names starting with "." are skipped, files and directories alike
    - non-regular files (sockets, fifos, devices) are skipped
    - symlinks are skipped unless ``follow_symlinks`` is set, in which
      case the link target's content is hashed under the link's path
    - a missing root yields an empty mapping
    - a followed link leading back into its own ancestry is not descended

    Returns:
        Mapping of relative POSIX path -> hex digest, sorted by path
    """
    root = Path(root)
    if not root.is_dir():
        return {}

    hashes: Dict[str, str] = {}
    _walk(root, "", hashes, follow_symlinks, frozenset([os.path.realpath(root)]))
    return dict(sorted(hashes.items()))


def _require_utf8(rel: str, path: str) -> None:
    # manifests are UTF-8 JSON; an undecodable name cannot be recorded
    try:
        rel.encode("utf-8")
    except UnicodeEncodeError as e:
        raise HashingIOError(f"Cannot record {path!r}: file name is not valid UTF-8", path=path) from e


def _walk(directory: Path, prefix: str, hashes: Dict[str, str], follow_symlinks: bool,
          ancestors: FrozenSet[str]) -> None:
    try:
        entries = sorted(os.scandir(directory), key=lambda e: e.name)
    except OSError as e:
        raise HashingIOError(f"Cannot list {directory}: {e.strerror or e}", path=str(directory)) from e

    for entry in entries:
        if entry.name.startswith(HIDDEN_PREFIX):
            continue

        rel = f"{prefix}{entry.name}"
        is_link = entry.is_symlink()
        if is_link and not follow_symlinks:
            continue

        try:
            st = os.stat(entry.path) if is_link else entry.stat(follow_symlinks=False)
        except FileNotFoundError:
            # dangling symlink
            continue
        except OSError as e:
            raise HashingIOError(f"Cannot stat {entry.path}: {e.strerror or e}", path=entry.path) from e

        if stat.S_ISDIR(st.st_mode):
            real = os.path.realpath(entry.path)
            if real in ancestors:
                continue
            _require_utf8(rel, entry.path)
            _walk(Path(entry.path), rel + "/", hashes, follow_symlinks, ancestors | {real})
        elif stat.S_ISREG(st.st_mode):
            _require_utf8(rel, entry.path)
            hashes[rel] = sha256_file(entry.path)


async def hash_directory_async(root: Union[str, Path], follow_symlinks: bool = False) -> Dict[str, str]:
    """Run ``hash_directory`` in a worker thread."""
    return await asyncio.to_thread(hash_directory, root, follow_symlinks)


@dataclass
class HashDiff:
    """Field-by-field comparison of a recorded digest mapping and a fresh one."""
    modified: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.modified or self.missing or self.added)

    def paths(self, prefix: Optional[str] = None) -> List[str]:
        all_paths = sorted(set(self.modified) | set(self.missing) | set(self.added))
        if prefix:
            return [f"{prefix}/{p}" for p in all_paths]
        return all_paths

    def to_dict(self) -> Dict[str, List[str]]:
        return {"modified": self.modified, "missing": self.missing, "added": self.added}


def compare_hashes(recorded: Dict[str, str], current: Dict[str, str]) -> HashDiff:
    """
    Compare a manifest's recorded digests with freshly computed ones.

    Per entry: a path in both with different digests is modified, a
    recorded path no longer present is missing, a new path is added.
    """
    diff = HashDiff()
    for path in sorted(recorded):
        if path not in current:
            diff.missing.append(path)
        elif current[path] != recorded[path]:
            diff.modified.append(path)
    for path in sorted(current):
        if path not in recorded:
            diff.added.append(path)
    return diff
