from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import DecodeError


@dataclass(frozen=True)
class BuildSpec:
    """Build matrix decoded from the front matter of the input file."""

    files: Tuple[str, ...] = ()
    git: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BuildSpec":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise DecodeError("Front matter must be a mapping with 'files' and 'git' keys")

        files = data.get("files") or []
        if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
            raise DecodeError("'files' must be a list of paths")

        git = data.get("git") or {}
        if not isinstance(git, dict):
            raise DecodeError("'git' must map repository URLs to references")
        repositories: Dict[str, str] = {}
        for url, ref in git.items():
            if not isinstance(url, str) or not isinstance(ref, (str, int, float)):
                raise DecodeError(f"Invalid git entry: {url!r}: {ref!r}")
            repositories[url] = str(ref)

        return cls(files=tuple(files), git=repositories)


@dataclass
class RepositoryStore:
    """Scratch area holding one repository's work tree and object store."""

    url: str
    ref: str
    root: Path

    @property
    def tree(self) -> Path:
        return self.root / "tree"

    @property
    def git_dir(self) -> Path:
        return self.root / "objects"


class EntryKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    mode: int
    size: int = 0
    content: bytes = b""
    kind: EntryKind = EntryKind.FILE
    link_target: str = ""

    @classmethod
    def file(cls, path: str, content: bytes, mode: int = 0o600) -> "ArchiveEntry":
        return cls(path=path, mode=mode, size=len(content), content=content)

    @classmethod
    def directory(cls, path: str, mode: int = 0o755) -> "ArchiveEntry":
        return cls(path=path, mode=mode, kind=EntryKind.DIRECTORY)

    @classmethod
    def symlink(cls, path: str, target: str) -> "ArchiveEntry":
        return cls(path=path, mode=0o777, kind=EntryKind.SYMLINK, link_target=target)


@dataclass
class ImageRecord:
    id: str
    labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ImageRecord":
        return cls(id=data.get("Id", ""), labels=dict(data.get("Labels") or {}))


@dataclass
class BuildResult:
    """Summary of one build/tag/cleanup run."""

    tag: str
    image_id: Optional[str] = None
    promoted: List[ImageRecord] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "image_id": self.image_id,
            "promoted": [image.id for image in self.promoted],
            "removed": list(self.removed),
        }
