from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Tuple

import yaml

from .errors import DecodeError, InputError
from .models import BuildSpec

YAML_DELIMITER = b"---"


def split_front_matter(lines: Iterable[bytes]) -> Tuple[bytes, bytes]:
    """Split input lines into the YAML front matter and the Dockerfile body.

    Every line equal to ``---`` toggles between the two sections, so text
    before the opening delimiter and after the closing one is Dockerfile.
    Lines are kept as bytes; the Dockerfile is never decoded.
    """

    front_matter: list[bytes] = []
    dockerfile: list[bytes] = []
    in_front_matter = False
    for raw_line in lines:
        line = raw_line.rstrip(b"\r\n")
        if line == YAML_DELIMITER:
            in_front_matter = not in_front_matter
            continue
        if in_front_matter:
            front_matter.append(line + b"\n")
        else:
            dockerfile.append(line + b"\n")

    if not front_matter:
        raise InputError("Error no frontmatter content")
    if not dockerfile:
        raise InputError("Error no Dockerfile content")
    return b"".join(front_matter), b"".join(dockerfile)


@dataclass
class BuildFile:
    """Input document: a build matrix plus the Dockerfile it wraps."""

    spec: BuildSpec
    dockerfile: bytes
    source: str = "<stdin>"
    front_matter: bytes = field(default=b"", repr=False)

    @classmethod
    def from_bytes(cls, data: bytes, source: str = "<stdin>") -> "BuildFile":
        front_matter, dockerfile = split_front_matter(data.splitlines(keepends=True))
        try:
            raw_data = yaml.safe_load(front_matter)
        except yaml.YAMLError as exc:
            raise DecodeError(f"Error decode frontmatter in {source}") from exc
        return cls(
            spec=BuildSpec.from_dict(raw_data),
            dockerfile=dockerfile,
            source=source,
            front_matter=front_matter,
        )

    @classmethod
    def from_stream(cls, stream: BinaryIO, source: str = "<stdin>") -> "BuildFile":
        try:
            data = stream.read()
        except OSError as exc:
            raise InputError(f"Can't read file {source}") from exc
        return cls.from_bytes(data, source=source)

    @classmethod
    def from_file(cls, path: Optional[str | Path]) -> "BuildFile":
        """Load ``path``, or standard input when ``path`` is empty."""

        if not path:
            return cls.from_stream(sys.stdin.buffer)

        path = Path(path)
        if not path.is_file():
            raise InputError(f"Please pass a valid Dockerfile: {path}")
        try:
            with path.open("rb") as handle:
                return cls.from_stream(handle, source=str(path))
        except OSError as exc:
            raise InputError(f"Can't read file {path}") from exc
