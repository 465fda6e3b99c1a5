"""Build Docker images from Dockerfiles carrying a YAML build matrix."""

from .context import BuildContext, ContextAssembler, LocalFilesystem, folder_from_git_url
from .daemon import BuildCoordinator, DockerDaemon
from .frontmatter import BuildFile
from .models import BuildResult, BuildSpec
from .pipeline import BuildOrchestrator, Stage, StageError
from .repositories import RepositoryFetchManager

__all__ = [
    "BuildContext",
    "BuildCoordinator",
    "BuildFile",
    "BuildOrchestrator",
    "BuildResult",
    "BuildSpec",
    "ContextAssembler",
    "DockerDaemon",
    "LocalFilesystem",
    "RepositoryFetchManager",
    "Stage",
    "StageError",
    "folder_from_git_url",
]
