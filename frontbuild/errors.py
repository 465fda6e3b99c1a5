from __future__ import annotations

from typing import List, Optional, Sequence, Tuple


class FrontbuildError(RuntimeError):
    """Base class for every failure reported by the build pipeline."""


class InputError(FrontbuildError):
    """Raised when the input file is missing, invalid or has an empty section."""


class DecodeError(FrontbuildError):
    """Raised when the front matter is not a valid build matrix."""


class FetchError(FrontbuildError):
    """Raised when one or more repositories could not be cloned."""

    def __init__(self, failures: Sequence[Tuple[str, str, BaseException]]) -> None:
        self.failures: List[Tuple[str, str, BaseException]] = list(failures)
        details = "; ".join(f"{url}@{ref}: {error}" for url, ref, error in self.failures)
        super().__init__(f"Error getting repository at reference ({details})")


class ContextError(FrontbuildError):
    """Raised when the build context cannot be assembled."""


class FileAccessError(ContextError):
    """Raised when a local file or directory listed in the matrix can't be read."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Can't read {path}: {reason}")


class UserResolutionError(ContextError):
    """Raised when the current user's home directory cannot be resolved."""


class NameCollisionError(ContextError):
    """Raised when two entries would land on the same archive path."""


class InvalidStateError(ContextError):
    """Raised when a sealed context is appended to, or an open one is read."""


class UnsafePathError(ContextError):
    """Raised when an archive path would escape the context root."""


class DaemonError(FrontbuildError):
    """Base class for failures talking to the build daemon."""


class DaemonUnavailableError(DaemonError):
    """Raised when no connection to the Docker daemon can be made."""


class BuildFailedError(DaemonError):
    """Raised when the daemon rejects or fails the build, with its message."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Error building Docker image: {message}")


class StreamDisplayError(DaemonError):
    """Raised when the build progress stream is malformed or interrupted."""


class ListImageError(DaemonError):
    """Raised when the daemon can't list the labelled dangling images."""


class TagImageError(DaemonError):
    """Raised when a built image can't be tagged."""


class RemoveImageError(DaemonError):
    """Raised when a dangling image can't be removed."""


def format_error_chain(error: BaseException) -> str:
    """Join an exception and its causes into a single line."""

    messages: List[str] = []
    current: Optional[BaseException] = error
    while current is not None:
        text = str(current)
        if text and not any(text in message for message in messages):
            messages.append(text)
        current = current.__cause__
    return ": ".join(messages)
