"""Find runnable test files under a project root and filter them."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import time
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from testpilot.config import DEFAULT_INCLUDE_GLOBS
from testpilot.errors import ConfigurationError
from testpilot.orchestrator.models import JobIdentity

logger = logging.getLogger(__name__)

_TAGS_ANNOTATION_RE = re.compile(r"@Tags\(\s*\[([^\]]*)\]\s*\)")
_TAGS_COMMENT_RE = re.compile(r"^\s*(?:#|//)\s*tags\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_TAG_TOKEN_RE = re.compile(r"['\"]([^'\"]+)['\"]")
_CASE_RE = re.compile(
    r"\b(?:testWidgets|test)\s*\(|^\s*(?:async\s+)?def\s+test_\w*\s*\(",
    re.MULTILINE,
)


@dataclass(frozen=True, slots=True)
class JobMetadata:
    """Cheap static facts about one discovered test file."""

    identity: JobIdentity
    name: str
    size: int
    case_count: int = 0
    tags: frozenset[str] = field(default_factory=frozenset)


class DiscoveredJobs:
    """Restartable lazy view over a discovery scan; each iteration rescans."""

    def __init__(self, finder: JobFinder) -> None:
        self._finder = finder

    def __iter__(self) -> Iterator[JobIdentity]:
        return iter(self._finder.scan())

    def __repr__(self) -> str:
        return f"DiscoveredJobs(root={str(self._finder.root)!r})"


class JobFinder:
    """Discover job identities (root-relative POSIX paths) under ``root``."""

    def __init__(
        self,
        root: Path,
        *,
        include_globs: Sequence[str] = DEFAULT_INCLUDE_GLOBS,
        exclude_globs: Sequence[str] = (),
        tags: Iterable[str] = (),
    ) -> None:
        if not root.is_dir():
            raise ConfigurationError(
                f"Discovery root does not exist or is not a directory: {root}",
            )
        if not include_globs:
            raise ConfigurationError("At least one include glob is required.")
        self.root = root.resolve()
        self.include_globs = tuple(include_globs)
        self.exclude_globs = tuple(pattern for pattern in exclude_globs if pattern)
        self.tags = frozenset(tag.strip() for tag in tags if tag.strip())

    def discover(self) -> DiscoveredJobs:
        return DiscoveredJobs(self)

    def scan(self) -> list[JobIdentity]:
        """One eager scan: include, exclude, tag filter; sorted and de-duplicated."""

        found: set[JobIdentity] = set()
        for pattern in self.include_globs:
            for path in self.root.glob(pattern):
                if not path.is_file():
                    continue
                identity = self.identity_for(path)
                if identity in found or self.is_excluded(identity):
                    continue
                if not os.access(path, os.R_OK):
                    logger.warning("Skipping unreadable test file %s", path)
                    continue
                if self.tags and not (self.get_metadata(identity).tags & self.tags):
                    continue
                found.add(identity)
        identities = sorted(found)
        logger.debug("Discovered %d job(s) under %s", len(identities), self.root)
        return identities

    def identity_for(self, path: Path) -> JobIdentity:
        resolved = path if path.is_absolute() else self.root / path
        try:
            return resolved.relative_to(self.root).as_posix()
        except ValueError:
            return resolved.as_posix()

    def path_for(self, identity: JobIdentity) -> Path:
        return self.root / identity

    def is_excluded(self, identity: JobIdentity) -> bool:
        """Exclude patterns match as globs or, failing that, as plain substrings."""

        for pattern in self.exclude_globs:
            if fnmatch.fnmatch(identity, pattern) or pattern in identity:
                return True
        return False

    def get_metadata(self, identity: JobIdentity) -> JobMetadata:
        """Parse tags and case count; parse failures degrade to empty metadata."""

        path = self.path_for(identity)
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as error:
            logger.warning("Could not read %s for metadata: %s", path, error)
            return JobMetadata(identity=identity, name=path.stem, size=size)
        return JobMetadata(
            identity=identity,
            name=path.stem,
            size=size,
            case_count=count_cases(content),
            tags=parse_tags(content),
        )

    def group_by_directory(
        self,
        identities: Iterable[JobIdentity],
    ) -> dict[str, list[JobIdentity]]:
        groups: dict[str, list[JobIdentity]] = {}
        for identity in identities:
            directory = Path(identity).parent.as_posix()
            groups.setdefault(directory, []).append(identity)
        return groups

    def find_recently_modified(self, max_age_seconds: float) -> list[JobIdentity]:
        """Discovered jobs whose file changed within ``max_age_seconds``."""

        cutoff = time.time() - max_age_seconds
        recent: list[JobIdentity] = []
        for identity in self.discover():
            try:
                modified = self.path_for(identity).stat().st_mtime
            except OSError:
                continue
            if modified >= cutoff:
                recent.append(identity)
        return recent

    def search_by_name(self, pattern: str) -> list[JobIdentity]:
        """Case-insensitive regex search over file basenames."""

        try:
            matcher = re.compile(pattern, re.IGNORECASE)
        except re.error as error:
            raise ConfigurationError(f"Invalid search pattern {pattern!r}: {error}") from error
        return [identity for identity in self.discover() if matcher.search(Path(identity).name)]

    def all_tags(self) -> list[str]:
        tags: set[str] = set()
        for identity in self.discover():
            tags.update(self.get_metadata(identity).tags)
        return sorted(tags)


def parse_tags(content: str) -> frozenset[str]:
    """Collect tags from ``@Tags(['a', 'b'])`` annotations and ``# tags: a, b`` lines."""

    tags: set[str] = set()
    for match in _TAGS_ANNOTATION_RE.finditer(content):
        tags.update(token.strip() for token in _TAG_TOKEN_RE.findall(match.group(1)))
    for match in _TAGS_COMMENT_RE.finditer(content):
        tags.update(part.strip() for part in match.group(1).split(","))
    return frozenset(tag for tag in tags if tag)


def count_cases(content: str) -> int:
    return len(_CASE_RE.findall(content))
