from __future__ import annotations

import argparse
import logging
import sys
from functools import partial

from .daemon import DEFAULT_DOCKER_TIMEOUT, DockerDaemon
from .errors import FrontbuildError, format_error_chain
from .frontmatter import BuildFile
from .pipeline import BuildOrchestrator
from .repositories import DEFAULT_FETCH_TIMEOUT, RepositoryFetchManager

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _timeout(value: str) -> float | None:
    seconds = float(value)
    return seconds if seconds > 0 else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="frontbuild",
        description="Build a Docker image from a Dockerfile with a YAML build matrix front matter.",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default="",
        help="Dockerfile with front matter. Reads standard input when omitted.",
    )
    parser.add_argument("-t", dest="tag", default="", help="Tag to apply to the produced Docker image.")
    parser.add_argument(
        "-branch",
        "--branch",
        dest="branch",
        default="",
        help="Override the git branches defined in the Dockerfile.",
    )
    parser.add_argument(
        "--fetch-timeout",
        type=_timeout,
        default=DEFAULT_FETCH_TIMEOUT,
        help="Seconds allowed for each repository clone (0 disables the limit).",
    )
    parser.add_argument(
        "--docker-timeout",
        type=int,
        default=DEFAULT_DOCKER_TIMEOUT,
        help="Seconds allowed for each Docker daemon call.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    orchestrator = BuildOrchestrator(
        daemon_factory=partial(DockerDaemon.from_env, timeout=args.docker_timeout),
        fetch_manager=RepositoryFetchManager(timeout=args.fetch_timeout),
    )
    try:
        build_file = BuildFile.from_file(args.path)
        orchestrator.run(build_file.spec, build_file.dockerfile, args.tag, args.branch)
    except FrontbuildError as exc:
        logger.debug("Build failed", exc_info=True)
        print(format_error_chain(exc), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
