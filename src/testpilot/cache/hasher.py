"""Deterministic content fingerprints used as cache-invalidation keys."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping, Sequence
from pathlib import Path

from testpilot.orchestrator.models import Fingerprint, JobIdentity

_MISSING_MARKER = b"\x00missing\x00"


def fingerprint(data: bytes) -> Fingerprint:
    """SHA-256 hex digest of a job's defining bytes."""

    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Path, dependencies: Sequence[Path] = ()) -> Fingerprint:
    """Digest of a job file plus its declared dependencies.

    Without dependencies this equals ``fingerprint(path.read_bytes())``.
    Each dependency is framed by its path so moving bytes between files
    changes the digest; a missing dependency hashes to a fixed marker, so
    creating it later is also a change.
    """

    content = path.read_bytes()
    if not dependencies:
        return fingerprint(content)

    digest = hashlib.sha256(content)
    for dependency in dependencies:
        digest.update(b"\x00dep\x00")
        digest.update(str(dependency).encode("utf-8"))
        digest.update(b"\x00")
        try:
            digest.update(dependency.read_bytes())
        except FileNotFoundError:
            digest.update(_MISSING_MARKER)
    return digest.hexdigest()


class ContentHasher:
    """Resolve job identities to files under a root and fingerprint them."""

    def __init__(
        self,
        root: Path,
        *,
        dependencies: Mapping[JobIdentity, Sequence[Path]] | None = None,
    ) -> None:
        self.root = root
        self.dependencies = dict(dependencies or {})

    def path_for(self, identity: JobIdentity) -> Path:
        path = Path(identity)
        if path.is_absolute():
            return path
        return self.root / path

    def __call__(self, identity: JobIdentity) -> Fingerprint:
        deps = [self.path_for(str(dep)) for dep in self.dependencies.get(identity, ())]
        return fingerprint_file(self.path_for(identity), deps)
