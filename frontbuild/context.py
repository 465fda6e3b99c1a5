"""Deterministic tar build contexts for the Docker daemon."""

from __future__ import annotations

import io
import logging
import os
import posixpath
import re
import stat
import tarfile
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Set, Tuple

from .errors import (
    FileAccessError,
    InvalidStateError,
    NameCollisionError,
    UnsafePathError,
    UserResolutionError,
)
from .models import ArchiveEntry, EntryKind, RepositoryStore

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = "Dockerfile"
DOCKERFILE_MODE = 0o600


def normalize_archive_path(path: str) -> str:
    """Return ``path`` as a clean archive-relative POSIX path.

    Absolute paths and paths resolving outside the archive root are refused.
    """

    if not path or path.startswith("/"):
        raise UnsafePathError(f"Invalid archive path: {path!r}")
    normalized = posixpath.normpath(path)
    if normalized in (".", "..") or normalized.startswith("../"):
        raise UnsafePathError(f"Archive path escapes the context root: {path!r}")
    return normalized


def folder_from_git_url(url: str) -> str:
    """Folder name used for a repository inside the build context.

    ``https://host/Owner/Repo.git``, ``http://host/owner/repo`` and
    ``git@host:Owner/repo.git`` all map to ``repo``.
    """

    last_segment = re.split(r"[/:]", url.strip().rstrip("/"))[-1].lower()
    if last_segment.endswith(".git"):
        last_segment = last_segment[: -len(".git")]
    if last_segment in ("", ".", ".."):
        raise UnsafePathError(f"Can't derive a folder name from {url!r}")
    return last_segment


class LocalFilesystem:
    """Read access to the local files listed in a build matrix."""

    def __init__(self, home: Optional[str | Path] = None) -> None:
        self._home = Path(home) if home is not None else None

    def home(self) -> Path:
        if self._home is not None:
            return self._home
        try:
            return Path.home()
        except (KeyError, RuntimeError) as exc:
            raise UserResolutionError("Error getting user directory") from exc

    def expand(self, path: str) -> Path:
        if path.startswith("~/"):
            return self.home() / path[2:]
        return Path(path)

    def stat(self, path: Path) -> os.stat_result:
        try:
            return path.stat()
        except OSError as exc:
            raise FileAccessError(str(path), exc.strerror or str(exc)) from exc

    def list_dir(self, path: Path) -> List[Path]:
        try:
            return sorted(path.iterdir(), key=lambda child: child.name)
        except OSError as exc:
            raise FileAccessError(str(path), exc.strerror or str(exc)) from exc

    def read_bytes(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise FileAccessError(str(path), exc.strerror or str(exc)) from exc


class BuildContext:
    """Append-only tar archive sent to the daemon as the build input."""

    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        self._tar = tarfile.open(fileobj=self._buffer, mode="w", format=tarfile.PAX_FORMAT)
        self._paths: Set[str] = set()
        self._directories: Set[str] = set()
        self.entries: List[ArchiveEntry] = []
        self.sealed = False

    def append(self, entry: ArchiveEntry) -> None:
        if self.sealed:
            raise InvalidStateError(f"Can't add {entry.path}: context is sealed")
        name = normalize_archive_path(entry.path)
        if name in self._paths:
            raise NameCollisionError(f"Duplicate entry in build context: {name}")
        parent = posixpath.dirname(name)
        if parent and parent not in self._directories:
            raise InvalidStateError(f"Directory {parent} must be added before {name}")

        info = tarfile.TarInfo(name)
        info.mode = entry.mode
        if entry.kind is EntryKind.DIRECTORY:
            info.type = tarfile.DIRTYPE
            self._tar.addfile(info)
            self._directories.add(name)
        elif entry.kind is EntryKind.SYMLINK:
            info.type = tarfile.SYMTYPE
            info.linkname = entry.link_target
            self._tar.addfile(info)
        else:
            info.size = len(entry.content)
            self._tar.addfile(info, io.BytesIO(entry.content))

        self._paths.add(name)
        self.entries.append(entry)
        logger.debug("Added %s to build context", name)

    def seal(self) -> None:
        if self.sealed:
            return
        self._tar.close()
        self.sealed = True

    def getvalue(self) -> bytes:
        if not self.sealed:
            raise InvalidStateError("Build context must be sealed before it is read")
        return self._buffer.getvalue()

    def __len__(self) -> int:
        return len(self.entries)


class ContextAssembler:
    """Combine the Dockerfile, local files and fetched repositories."""

    def __init__(self, filesystem: Optional[LocalFilesystem] = None) -> None:
        self.filesystem = filesystem or LocalFilesystem()

    def assemble(
        self,
        dockerfile: bytes,
        files: Sequence[str],
        stores: Mapping[str, RepositoryStore],
    ) -> BuildContext:
        logger.info("Building Docker context")
        repositories = self._repository_folders(stores)

        context = BuildContext()
        context.append(ArchiveEntry.file(DOCKERFILE_NAME, dockerfile, mode=DOCKERFILE_MODE))
        for file_path in files:
            self._add_local_path(context, file_path)
        for folder, store in repositories:
            self._add_tree(context, folder, store.tree, root=True)
        context.seal()
        logger.info("Build context ready: %d entries", len(context))
        return context

    @staticmethod
    def _repository_folders(
        stores: Mapping[str, RepositoryStore],
    ) -> List[Tuple[str, RepositoryStore]]:
        folders: dict[str, RepositoryStore] = {}
        for url, store in stores.items():
            folder = folder_from_git_url(url)
            if folder in folders:
                raise NameCollisionError(
                    f"Repositories {folders[folder].url} and {url} both map to folder {folder}"
                )
            folders[folder] = store
        return sorted(folders.items())

    def _add_local_path(self, context: BuildContext, file_path: str) -> None:
        path = self.filesystem.expand(file_path)
        info = self.filesystem.stat(path)
        if not stat.S_ISDIR(info.st_mode):
            self._add_local_file(context, "", path)
            return

        folder = path.resolve().name
        context.append(ArchiveEntry.directory(folder, mode=stat.S_IMODE(info.st_mode)))
        for child in self.filesystem.list_dir(path):
            if child.is_dir():
                logger.debug("Skipping nested directory %s", child)
                continue
            self._add_local_file(context, folder, child)

    def _add_local_file(self, context: BuildContext, folder: str, path: Path) -> None:
        info = self.filesystem.stat(path)
        content = self.filesystem.read_bytes(path)
        name = posixpath.join(folder, path.name) if folder else path.name
        context.append(ArchiveEntry.file(name, content, mode=stat.S_IMODE(info.st_mode)))

    def _add_tree(self, context: BuildContext, name: str, path: Path, root: bool = False) -> None:
        try:
            info = path.lstat()
            if stat.S_ISDIR(info.st_mode):
                context.append(ArchiveEntry.directory(name, mode=stat.S_IMODE(info.st_mode)))
                for child in sorted(os.listdir(path)):
                    if root and child == ".git":
                        continue
                    self._add_tree(context, posixpath.join(name, child), path / child)
            elif stat.S_ISLNK(info.st_mode):
                context.append(ArchiveEntry.symlink(name, os.readlink(path)))
            elif stat.S_ISREG(info.st_mode):
                context.append(
                    ArchiveEntry.file(name, path.read_bytes(), mode=stat.S_IMODE(info.st_mode))
                )
            else:
                logger.debug("Skipping special file %s", path)
        except OSError as exc:
            raise FileAccessError(str(path), exc.strerror or str(exc)) from exc
