from __future__ import annotations

import io
from unittest import mock

import docker
import pytest
import requests
from docker.errors import APIError, DockerException, StreamParseError

from frontbuild.context import BuildContext
from frontbuild.daemon import BuildCoordinator, DockerDaemon
from frontbuild.errors import (
    BuildFailedError,
    DaemonUnavailableError,
    ListImageError,
    RemoveImageError,
    StreamDisplayError,
    TagImageError,
)
from frontbuild.models import ArchiveEntry

from conftest import FakeDaemon


def _context() -> BuildContext:
    context = BuildContext()
    context.append(ArchiveEntry.file("Dockerfile", b"FROM scratch\n"))
    context.seal()
    return context


def test_progress_is_relayed_in_order(fake_daemon: FakeDaemon) -> None:
    fake_daemon.messages = [
        {"stream": "Step 1/2 : FROM busybox\n"},
        {"status": "Pulling fs layer", "id": "abc123"},
        {"status": "Downloading", "id": "abc123", "progress": "[==>   ] 1MB/2MB"},
        {"status": "Digest: sha256:feed"},
        {"stream": "Step 2/2 : LABEL build_tag=demo\n"},
        {"aux": {"ID": "sha256:built"}},
    ]
    output = io.StringIO()
    image_id = BuildCoordinator(fake_daemon, output).build(_context())

    assert image_id == "sha256:built"
    assert output.getvalue() == (
        "Step 1/2 : FROM busybox\n"
        "abc123: Pulling fs layer\n"
        "abc123: Downloading [==>   ] 1MB/2MB\n"
        "Digest: sha256:feed\n"
        "Step 2/2 : LABEL build_tag=demo\n"
    )
    assert fake_daemon.contexts == [_context().getvalue()]


def test_build_error_message_is_reported(fake_daemon: FakeDaemon) -> None:
    fake_daemon.messages = [
        {"stream": "Step 1/1 : RUN false\n"},
        {"errorDetail": {"code": 1, "message": "The command '/bin/sh -c false' returned a non-zero code: 1"},
         "error": "The command '/bin/sh -c false' returned a non-zero code: 1"},
    ]
    with pytest.raises(BuildFailedError) as excinfo:
        BuildCoordinator(fake_daemon, io.StringIO()).run(_context(), "demo:latest")
    assert "non-zero code: 1" in excinfo.value.message
    assert ("list", "demo:latest") not in fake_daemon.calls


def test_malformed_progress_message(fake_daemon: FakeDaemon) -> None:
    fake_daemon.messages = [{"stream": "ok\n"}, "not-a-json-object"]
    with pytest.raises(StreamDisplayError):
        BuildCoordinator(fake_daemon, io.StringIO()).build(_context())


def test_promotion_completes_before_cleanup_listing(fake_daemon: FakeDaemon) -> None:
    fake_daemon.tag_clears_dangling = False
    fake_daemon.add_image("sha256:old", "demo:latest")
    fake_daemon.add_image("sha256:new", "demo:latest")
    fake_daemon.add_image("sha256:other", "other:latest")

    result = BuildCoordinator(fake_daemon, io.StringIO()).run(_context(), "demo:latest")

    assert fake_daemon.calls == [
        ("submit",),
        ("list", "demo:latest"),
        ("tag", "sha256:new", "demo:latest"),
        ("tag", "sha256:old", "demo:latest"),
        ("list", "demo:latest"),
        ("remove", "sha256:new", True, True),
        ("remove", "sha256:old", True, True),
    ]
    assert [image.id for image in result.promoted] == ["sha256:new", "sha256:old"]
    assert result.removed == ["sha256:new", "sha256:old"]
    assert list(fake_daemon.images) == ["sha256:other"]


def test_promoted_images_that_are_no_longer_dangling_survive(fake_daemon: FakeDaemon) -> None:
    fake_daemon.add_image("sha256:new", "demo:latest")
    fake_daemon.add_image("sha256:tagged", "demo:latest", dangling=False)

    result = BuildCoordinator(fake_daemon, io.StringIO()).run(_context(), "demo:latest")

    assert fake_daemon.images["sha256:new"]["tags"] == ["demo:latest"]
    assert "sha256:tagged" in fake_daemon.images
    assert result.removed == []
    assert fake_daemon.list_images("demo:latest") == []


def test_cleanup_with_no_matching_images_is_not_an_error(fake_daemon: FakeDaemon) -> None:
    result = BuildCoordinator(fake_daemon, io.StringIO()).run(_context(), "demo:latest")
    assert result.promoted == []
    assert result.removed == []
    assert result.image_id == "sha256:built"


def test_empty_tag_promotes_each_image_to_its_own_label(fake_daemon: FakeDaemon) -> None:
    fake_daemon.tag_clears_dangling = False
    fake_daemon.add_image("sha256:api", "api:latest")
    fake_daemon.add_image("sha256:web", "web:2")
    fake_daemon.add_image("sha256:plain", None)

    result = BuildCoordinator(fake_daemon, io.StringIO()).run(_context(), "")

    assert fake_daemon.calls == [
        ("submit",),
        ("list", ""),
        ("tag", "sha256:api", "api:latest"),
        ("tag", "sha256:web", "web:2"),
        ("list", ""),
        ("remove", "sha256:api", True, True),
        ("remove", "sha256:web", True, True),
    ]
    assert [image.id for image in result.promoted] == ["sha256:api", "sha256:web"]
    assert list(fake_daemon.images) == ["sha256:plain"]


def test_empty_label_value_is_not_tagged(fake_daemon: FakeDaemon) -> None:
    fake_daemon.add_image("sha256:blank", "")

    result = BuildCoordinator(fake_daemon, io.StringIO()).run(_context(), "")

    assert result.promoted == []
    assert result.removed == ["sha256:blank"]
    assert not any(call[0] == "tag" for call in fake_daemon.calls)


def _docker_daemon() -> tuple:
    api = mock.MagicMock()
    return DockerDaemon(api), api


def test_docker_daemon_lists_dangling_images_by_label() -> None:
    daemon, api = _docker_daemon()
    api.images.return_value = [{"Id": "sha256:abc", "Labels": {"build_tag": "demo:1"}}]

    [image] = daemon.list_images("demo:1")

    api.images.assert_called_once_with(filters={"dangling": True, "label": "build_tag=demo:1"})
    assert image.id == "sha256:abc"
    assert image.labels == {"build_tag": "demo:1"}


def test_docker_daemon_tags_with_repository_and_version() -> None:
    daemon, api = _docker_daemon()
    api.tag.return_value = True
    daemon.tag_image("sha256:abc", "registry.local:5000/team/app:1.2")
    api.tag.assert_called_once_with("sha256:abc", "registry.local:5000/team/app", "1.2")

    api.tag.return_value = False
    with pytest.raises(TagImageError):
        daemon.tag_image("sha256:abc", "app")


def test_docker_daemon_removes_with_force_and_prune() -> None:
    daemon, api = _docker_daemon()
    daemon.remove_image("sha256:abc", force=True, prune_children=True)
    api.remove_image.assert_called_once_with("sha256:abc", force=True, noprune=False)

    api.remove_image.side_effect = APIError("conflict", explanation="image is in use")
    with pytest.raises(RemoveImageError, match="image is in use"):
        daemon.remove_image("sha256:abc")


def test_docker_daemon_list_failure() -> None:
    daemon, api = _docker_daemon()
    api.images.side_effect = APIError("server error")
    with pytest.raises(ListImageError):
        daemon.list_images("demo")


def test_docker_daemon_lists_any_build_tag_without_tag() -> None:
    daemon, api = _docker_daemon()
    api.images.return_value = []
    daemon.list_images("")
    api.images.assert_called_once_with(filters={"dangling": True, "label": "build_tag"})


def test_docker_daemon_rejected_build_raises_when_stream_is_read() -> None:
    daemon, api = _docker_daemon()

    def _rejected():
        raise APIError("400 Client Error: Bad Request", explanation="dockerfile parse error line 1")
        yield

    api.build.return_value = _rejected()
    with pytest.raises(BuildFailedError) as excinfo:
        BuildCoordinator(daemon, io.StringIO()).build(_context())
    assert excinfo.value.message == "dockerfile parse error line 1"


def test_docker_daemon_interrupted_stream() -> None:
    daemon, api = _docker_daemon()

    def _broken_stream():
        yield {"stream": "Step 1/1\n"}
        raise StreamParseError("Expecting value")

    api.build.return_value = _broken_stream()
    stream = daemon.submit(b"context")
    assert next(stream) == {"stream": "Step 1/1\n"}
    with pytest.raises(StreamDisplayError):
        next(stream)
    _, kwargs = api.build.call_args
    assert kwargs["custom_context"] is True
    assert kwargs["forcerm"] is True


def test_docker_daemon_connection_failure_on_submit() -> None:
    daemon, api = _docker_daemon()
    api.build.side_effect = requests.exceptions.ConnectionError("Connection refused")
    with pytest.raises(DaemonUnavailableError):
        daemon.submit(b"context")


def test_from_env_without_daemon(monkeypatch: pytest.MonkeyPatch) -> None:
    def _no_daemon(**kwargs):
        raise DockerException("Error while fetching server API version")

    monkeypatch.setattr(docker, "from_env", _no_daemon)
    with pytest.raises(DaemonUnavailableError, match="new Docker client"):
        DockerDaemon.from_env(timeout=5)


def test_from_env_keeps_client_and_closes_it(monkeypatch: pytest.MonkeyPatch) -> None:
    client = mock.MagicMock()
    monkeypatch.setattr(docker, "from_env", lambda **kwargs: client)

    daemon = DockerDaemon.from_env(timeout=5)
    assert daemon.api is client.api
    daemon.close()
    client.close.assert_called_once_with()
