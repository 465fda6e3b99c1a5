"""Concurrent shallow clones of the repositories declared in a build matrix."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .errors import FetchError
from .models import RepositoryStore
from .utils import ensure_directory, run_command

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 300.0

Cloner = Callable[[RepositoryStore, Optional[float]], None]


def clone_shallow(store: RepositoryStore, timeout: Optional[float] = None) -> None:
    """Clone ``store.url`` at ``store.ref`` with a single commit of history.

    The object store lives in ``store.git_dir`` so that ``store.tree`` only
    holds the checked-out files (plus the ``.git`` pointer file).
    """

    ensure_directory(store.root)
    run_command(
        [
            "git",
            "clone",
            "--quiet",
            "--depth",
            "1",
            "--single-branch",
            "--branch",
            store.ref,
            "--separate-git-dir",
            str(store.git_dir),
            store.url,
            str(store.tree),
        ],
        env={"GIT_TERMINAL_PROMPT": "0"},
        timeout=timeout,
    )


class RepositoryFetchManager:
    """Fetch every repository of a build matrix, one worker per repository.

    A manager runs one ``fetch_all`` at a time; the store map it fills is
    shared between the submitting thread and the workers and is only touched
    under ``_lock``.
    """

    def __init__(
        self,
        cloner: Cloner = clone_shallow,
        timeout: Optional[float] = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        self.cloner = cloner
        self.timeout = timeout
        self._lock = threading.Lock()
        self._stores: Dict[str, RepositoryStore] = {}

    def fetch_all(
        self,
        repositories: Mapping[str, str],
        workspace: Path,
        ref_override: str = "",
    ) -> Dict[str, RepositoryStore]:
        """Clone all repositories under ``workspace`` and wait for every clone.

        A non-empty ``ref_override`` replaces the reference of every
        repository. Raises ``FetchError`` listing each repository that failed
        once all fetches have settled.
        """

        with self._lock:
            self._stores = {}
        if not repositories:
            return {}

        submitted: List[Tuple[str, str]] = []
        with ThreadPoolExecutor(
            max_workers=len(repositories), thread_name_prefix="fetch"
        ) as executor:
            futures = []
            for index, (url, declared_ref) in enumerate(repositories.items()):
                ref = ref_override or declared_ref
                with self._lock:
                    self._stores[url] = RepositoryStore(
                        url=url, ref=ref, root=Path(workspace) / f"repo-{index}"
                    )
                submitted.append((url, ref))
                futures.append(executor.submit(self._fetch, url))
            wait(futures)

        failures = []
        for (url, ref), future in zip(submitted, futures):
            error = future.exception()
            if error is not None:
                logger.error("Failed to clone %s at %s: %s", url, ref, error)
                failures.append((url, ref, error))
        if failures:
            raise FetchError(failures) from failures[0][2]

        with self._lock:
            return dict(self._stores)

    def _fetch(self, url: str) -> RepositoryStore:
        with self._lock:
            store = self._stores[url]
        logger.info("Cloning %s at %s", store.url, store.ref)
        self.cloner(store, self.timeout)
        logger.info("Cloned %s at %s", store.url, store.ref)
        return store
