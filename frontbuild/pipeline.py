from __future__ import annotations

import logging
import tempfile
from contextlib import contextmanager
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TextIO

from .context import ContextAssembler, LocalFilesystem
from .daemon import BuildCoordinator, Daemon, DockerDaemon
from .errors import FrontbuildError
from .models import BuildResult, BuildSpec
from .repositories import RepositoryFetchManager

logger = logging.getLogger(__name__)


class Stage(Enum):
    FETCH = auto()
    ASSEMBLE = auto()
    BUILD = auto()

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (cls.FETCH, cls.ASSEMBLE, cls.BUILD)


class StageError(FrontbuildError):
    """Wraps the first failure of a run with the stage that produced it."""

    def __init__(self, stage: Stage, error: BaseException) -> None:
        self.stage = stage
        self.error = error
        super().__init__(f"{stage.name.lower()} stage failed")


DaemonFactory = Callable[[], Daemon]


@contextmanager
def _stage(stage: Stage) -> Iterator[None]:
    logger.debug("Entering %s stage", stage.name.lower())
    try:
        yield
    except FrontbuildError as exc:
        raise StageError(stage, exc) from exc


class BuildOrchestrator:
    """Fetch repositories, assemble the context, then build, tag and clean up."""

    def __init__(
        self,
        daemon_factory: DaemonFactory = DockerDaemon.from_env,
        filesystem: Optional[LocalFilesystem] = None,
        fetch_manager: Optional[RepositoryFetchManager] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        self.daemon_factory = daemon_factory
        self.assembler = ContextAssembler(filesystem or LocalFilesystem())
        self.fetch_manager = fetch_manager or RepositoryFetchManager()
        self.output = output

    def run(
        self,
        spec: BuildSpec,
        dockerfile: bytes,
        tag: str = "",
        ref_override: str = "",
    ) -> BuildResult:
        with tempfile.TemporaryDirectory(prefix="frontbuild-") as scratch:
            with _stage(Stage.FETCH):
                stores = self.fetch_manager.fetch_all(spec.git, Path(scratch), ref_override)
            with _stage(Stage.ASSEMBLE):
                context = self.assembler.assemble(dockerfile, spec.files, stores)
            with _stage(Stage.BUILD):
                daemon = self.daemon_factory()
                try:
                    result = BuildCoordinator(daemon, self.output).run(context, tag)
                finally:
                    daemon.close()
        logger.info("Build finished: %s", result.to_dict())
        return result
