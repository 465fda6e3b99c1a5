from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

import pytest

from frontbuild.models import ImageRecord


class FakeDaemon:
    """In-memory stand-in for the Docker daemon used by the coordinator."""

    def __init__(
        self,
        messages: Optional[List[Any]] = None,
        tag_clears_dangling: bool = True,
    ) -> None:
        if messages is None:
            messages = [
                {"stream": "Step 1/1 : FROM scratch\n"},
                {"aux": {"ID": "sha256:built"}},
                {"stream": "Successfully built built\n"},
            ]
        self.messages = messages
        self.tag_clears_dangling = tag_clears_dangling
        self.images: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.contexts: List[bytes] = []
        self.closed = False

    def add_image(self, image_id: str, label: Optional[str], dangling: bool = True) -> None:
        labels = {"build_tag": label} if label is not None else {}
        self.images[image_id] = {"labels": labels, "dangling": dangling, "tags": []}

    def submit(self, context: bytes) -> Iterator[Any]:
        self.calls.append(("submit",))
        self.contexts.append(context)
        return iter(self.messages)

    def list_images(self, tag: str) -> List[ImageRecord]:
        self.calls.append(("list", tag))
        return [
            ImageRecord(id=image_id, labels=dict(image["labels"]))
            for image_id, image in sorted(self.images.items())
            if image["dangling"] and self._matches(image["labels"], tag)
        ]

    @staticmethod
    def _matches(labels: Dict[str, str], tag: str) -> bool:
        if not tag:
            return "build_tag" in labels
        return labels.get("build_tag") == tag

    def tag_image(self, image_id: str, tag: str) -> None:
        self.calls.append(("tag", image_id, tag))
        image = self.images[image_id]
        image["tags"].append(tag)
        if self.tag_clears_dangling:
            image["dangling"] = False

    def remove_image(self, image_id: str, force: bool, prune_children: bool) -> None:
        self.calls.append(("remove", image_id, force, prune_children))
        del self.images[image_id]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_daemon() -> FakeDaemon:
    return FakeDaemon()
