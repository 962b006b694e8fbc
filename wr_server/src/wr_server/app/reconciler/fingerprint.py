"""
Content-addressed build trigger.

fingerprint() digests everything that affects the produced image: every
regular file under the build context (relative path and bytes, in sorted
path order) followed by the Dockerfile name and the sorted build
arguments. The result does not depend on traversal order, modification
times, or absolute location.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterator, Mapping, Optional

_CHUNK_SIZE = 1024 * 1024


def _iter_files(root: Path) -> Iterator[Path]:
    for path in sorted(root.rglob("*"), key=lambda p: p.relative_to(root).as_posix()):
        if path.is_file():
            yield path


def fingerprint(
    context_dir: str | Path,
    build_args: Optional[Mapping[str, str]] = None,
    *,
    dockerfile: Optional[str] = None,
) -> str:
    """
    Compute a sha256 hex digest over a build context, the Dockerfile it is
    built with and its build args.

    Raises:
        FileNotFoundError if context_dir is not a directory.
    """
    root = Path(context_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"build context is not a directory: {root}")

    h = hashlib.sha256()
    for path in _iter_files(root):
        rel = path.relative_to(root).as_posix().encode("utf-8")
        # Length-prefix each field so (path, content) boundaries are unambiguous
        h.update(b"F")
        h.update(len(rel).to_bytes(8, "big"))
        h.update(rel)
        h.update(path.stat().st_size.to_bytes(8, "big"))
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
                h.update(chunk)
    if dockerfile is not None:
        name = dockerfile.encode("utf-8")
        h.update(b"D")
        h.update(len(name).to_bytes(8, "big"))
        h.update(name)
    for key, value in sorted((build_args or {}).items()):
        k = key.encode("utf-8")
        v = value.encode("utf-8")
        h.update(b"A")
        h.update(len(k).to_bytes(8, "big"))
        h.update(k)
        h.update(len(v).to_bytes(8, "big"))
        h.update(v)
    return h.hexdigest()


__all__ = ["fingerprint"]
