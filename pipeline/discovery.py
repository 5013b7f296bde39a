"""Artifact discovery and kind tagging.

Inputs are files, directories (walked in sorted order) or explicitly tagged
entries of the form ``kind=path`` (``evtx=C:/case/Security.evtx``). Untagged
files get their kind from the configured filename patterns, then from their
leading signature bytes. Each resolved path is returned once.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from contracts.artifacts import ArtifactKind

logger = logging.getLogger(__name__)

_SNIFF_BYTES = 8


@dataclass(frozen=True)
class TaggedPath:
    path: Path
    kind: ArtifactKind
    tagged_by: str  # "explicit" | "pattern" | "signature"


@dataclass
class DiscoveryResult:
    artifacts: list[TaggedPath] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)  # (path, reason)


def sniff_kind(head: bytes) -> ArtifactKind | None:
    """Guess the kind from the first bytes of a file."""
    if head.startswith(b"ElfFile\x00"):
        return ArtifactKind.EVENT_LOG
    if head.startswith(b"regf"):
        return ArtifactKind.REGISTRY_HIVE
    if head.startswith(b"FILE"):
        return ArtifactKind.FILESYSTEM_METADATA
    if len(head) >= 8 and head[4:8] == b"\xef\xcd\xab\x89":
        return ArtifactKind.USAGE_DATABASE
    return None


def _split_tag(entry: str) -> tuple[ArtifactKind | None, str]:
    if "=" in entry:
        tag, _, rest = entry.partition("=")
        try:
            return ArtifactKind.parse(tag), rest
        except ValueError:
            # Not a tag; '=' is part of the path.
            return None, entry
    return None, entry


class ArtifactDiscovery:
    """Expand input entries into kind-tagged artifact paths."""

    def __init__(
        self,
        *,
        patterns: Mapping[str, str] | None = None,
        recursive: bool = True,
        sniff: bool = True,
    ) -> None:
        self._patterns = [(ArtifactKind.parse(k), re.compile(p)) for k, p in (patterns or {}).items()]
        self._recursive = recursive
        self._sniff = sniff

    def discover(self, entries: Iterable[str]) -> DiscoveryResult:
        result = DiscoveryResult()
        seen: set[Path] = set()
        for entry in entries:
            kind, raw_path = _split_tag(str(entry).strip())
            path = Path(raw_path).expanduser()
            if not path.exists():
                result.skipped.append((raw_path, "not found"))
                continue
            for candidate in self._expand(path):
                resolved = candidate.resolve()
                if resolved in seen:
                    continue
                seen.add(resolved)
                tagged = self._tag(candidate, kind)
                if tagged is None:
                    result.skipped.append((str(candidate), "unknown artifact kind"))
                    continue
                result.artifacts.append(tagged)
        logger.info(
            "Discovered %d artifact(s), skipped %d", len(result.artifacts), len(result.skipped)
        )
        return result

    def _expand(self, path: Path) -> Iterator[Path]:
        if path.is_file():
            yield path
            return
        if self._recursive:
            for root, dirs, files in os.walk(path):
                dirs.sort()
                for name in sorted(files):
                    yield Path(root) / name
        else:
            for child in sorted(path.iterdir()):
                if child.is_file():
                    yield child

    def _tag(self, path: Path, explicit: ArtifactKind | None) -> TaggedPath | None:
        if explicit is not None:
            return TaggedPath(path=path, kind=explicit, tagged_by="explicit")
        text = path.as_posix()
        for kind, pattern in self._patterns:
            if pattern.search(text):
                return TaggedPath(path=path, kind=kind, tagged_by="pattern")
        if self._sniff:
            try:
                with path.open("rb") as f:
                    head = f.read(_SNIFF_BYTES)
            except OSError as exc:
                logger.warning("Cannot read %s for signature sniffing: %s", path, exc)
                return None
            kind = sniff_kind(head)
            if kind is not None:
                return TaggedPath(path=path, kind=kind, tagged_by="signature")
        return None


__all__ = ["ArtifactDiscovery", "DiscoveryResult", "TaggedPath", "sniff_kind"]
