"""Build, tag and cleanup protocol against the Docker daemon."""

from __future__ import annotations

import io
import logging
import sys
from typing import Any, Dict, Iterator, List, Optional, Protocol, TextIO

import docker
from docker.errors import APIError, DockerException, StreamParseError
from docker.utils import parse_repository_tag
from requests.exceptions import RequestException

from .context import BuildContext
from .errors import (
    BuildFailedError,
    DaemonUnavailableError,
    ListImageError,
    RemoveImageError,
    StreamDisplayError,
    TagImageError,
)
from .models import BuildResult, ImageRecord

logger = logging.getLogger(__name__)

BUILD_TAG_LABEL = "build_tag"
DEFAULT_DOCKER_TIMEOUT = 600


class Daemon(Protocol):
    def submit(self, context: bytes) -> Iterator[Dict[str, Any]]: ...

    def list_images(self, tag: str) -> List[ImageRecord]: ...

    def tag_image(self, image_id: str, tag: str) -> None: ...

    def remove_image(self, image_id: str, force: bool, prune_children: bool) -> None: ...

    def close(self) -> None: ...


def _explain(error: Exception) -> str:
    return getattr(error, "explanation", None) or str(error)


class DockerDaemon:
    """Daemon operations on top of the Docker SDK low-level API client."""

    def __init__(self, api: docker.APIClient, client: Optional[docker.DockerClient] = None) -> None:
        self.api = api
        self.client = client

    @classmethod
    def from_env(cls, timeout: int = DEFAULT_DOCKER_TIMEOUT) -> "DockerDaemon":
        """Connect using ``DOCKER_HOST`` and friends, like the docker CLI."""

        try:
            client = docker.from_env(timeout=timeout)
        except DockerException as exc:
            raise DaemonUnavailableError("Error creating a new Docker client") from exc
        return cls(client.api, client)

    def submit(self, context: bytes) -> Iterator[Dict[str, Any]]:
        try:
            stream = self.api.build(
                fileobj=io.BytesIO(context),
                custom_context=True,
                rm=True,
                forcerm=True,
                decode=True,
            )
        except APIError as exc:
            raise BuildFailedError(_explain(exc)) from exc
        except (DockerException, RequestException) as exc:
            raise DaemonUnavailableError("Can't reach the Docker daemon") from exc
        return self._relay(stream)

    @staticmethod
    def _relay(stream: Iterator[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        try:
            yield from stream
        except APIError as exc:
            raise BuildFailedError(_explain(exc)) from exc
        except (StreamParseError, RequestException) as exc:
            raise StreamDisplayError("Error displaying Docker output stream") from exc

    def list_images(self, tag: str) -> List[ImageRecord]:
        """Dangling images labelled ``build_tag=<tag>``, or carrying any
        ``build_tag`` label when ``tag`` is empty."""

        label = f"{BUILD_TAG_LABEL}={tag}" if tag else BUILD_TAG_LABEL
        try:
            images = self.api.images(filters={"dangling": True, "label": label})
        except (DockerException, RequestException) as exc:
            raise ListImageError(f"Error listing images: {_explain(exc)}") from exc
        return [ImageRecord.from_dict(image) for image in images]

    def tag_image(self, image_id: str, tag: str) -> None:
        repository, version = parse_repository_tag(tag)
        try:
            tagged = self.api.tag(image_id, repository, version)
        except (DockerException, RequestException) as exc:
            raise TagImageError(f"Error tagging image {image_id}: {_explain(exc)}") from exc
        if not tagged:
            raise TagImageError(f"Error tagging image {image_id} as {tag}")

    def remove_image(self, image_id: str, force: bool = True, prune_children: bool = True) -> None:
        try:
            self.api.remove_image(image_id, force=force, noprune=not prune_children)
        except (DockerException, RequestException) as exc:
            raise RemoveImageError(f"Error removing image {image_id}: {_explain(exc)}") from exc

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
        else:
            self.api.close()


class BuildCoordinator:
    """Submit a sealed context, relay progress, then promote and clean up.

    The daemon only labels the image it builds (``build_tag=<tag>``); the
    coordinator finds those dangling images, tags them, and then removes
    whatever is still dangling under the same label. Without a requested
    tag every labelled dangling image is promoted to its own label value.
    """

    def __init__(self, daemon: Daemon, output: Optional[TextIO] = None) -> None:
        self.daemon = daemon
        self.output = output if output is not None else sys.stdout

    def run(self, context: BuildContext, tag: str) -> BuildResult:
        result = BuildResult(tag=tag)
        result.image_id = self.build(context)
        result.promoted = self.promote(tag)
        result.removed = self.cleanup(tag)
        return result

    def build(self, context: BuildContext) -> Optional[str]:
        logger.info("Sending Docker context")
        image_id: Optional[str] = None
        for message in self.daemon.submit(context.getvalue()):
            image_id = self._display(message) or image_id
        return image_id

    def promote(self, tag: str) -> List[ImageRecord]:
        promoted = []
        for image in self.daemon.list_images(tag):
            target = tag or image.labels.get(BUILD_TAG_LABEL, "")
            if not target:
                logger.warning("Image %s has an empty %s label, not tagging", image.id, BUILD_TAG_LABEL)
                continue
            logger.info("Tagging %s %s", image.id, target)
            self.daemon.tag_image(image.id, target)
            promoted.append(image)
        return promoted

    def cleanup(self, tag: str) -> List[str]:
        # Listed again on purpose: promotion changes which images are dangling.
        removed = []
        for image in self.daemon.list_images(tag):
            logger.info("Deleting %s", image.id)
            self.daemon.remove_image(image.id, force=True, prune_children=True)
            removed.append(image.id)
        return removed

    def _display(self, message: Any) -> Optional[str]:
        if not isinstance(message, dict):
            raise StreamDisplayError(f"Malformed Docker output message: {message!r}")
        if "error" in message or "errorDetail" in message:
            detail = message.get("errorDetail") or {}
            raise BuildFailedError(detail.get("message") or message.get("error") or "unknown error")

        try:
            if "stream" in message:
                self.output.write(message["stream"])
            elif "status" in message:
                parts = [message["status"]]
                if message.get("progress"):
                    parts.append(message["progress"])
                line = " ".join(parts)
                if message.get("id"):
                    line = f"{message['id']}: {line}"
                self.output.write(line + "\n")
            self.output.flush()
        except (OSError, TypeError, ValueError) as exc:
            raise StreamDisplayError("Error displaying Docker output stream") from exc

        aux = message.get("aux")
        if isinstance(aux, dict) and aux.get("ID"):
            return aux["ID"]
        return None
