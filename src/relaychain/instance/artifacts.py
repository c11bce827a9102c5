"""Scratch files created for backend consumption and deleted on teardown."""

from __future__ import annotations

import itertools
import logging
import os
import threading
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

_COUNTER = itertools.count(1)


class ScratchFiles:
    """Names, writes, and tracks ephemeral files under a private directory.

    Names combine a process-wide monotonic counter with a random token so
    rapid init/destroy cycles never reuse a path.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir
        self._paths: list[Path] = []
        self._lock = threading.Lock()

    @property
    def paths(self) -> tuple[Path, ...]:
        with self._lock:
            return tuple(self._paths)

    def allocate(self, prefix: str, suffix: str) -> Path:
        """Reserve and track a fresh path; the caller writes its content."""

        self.root_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = self.root_dir / f"{prefix}_{os.getpid()}_{next(_COUNTER)}_{uuid4().hex[:8]}.{suffix}"
        with self._lock:
            self._paths.append(path)
        return path

    def write(self, prefix: str, suffix: str, content: str) -> Path:
        """Persist content to a fresh tracked path."""

        path = self.allocate(prefix, suffix)
        path.write_text(content, "utf-8")
        path.chmod(0o600)
        return path

    def cleanup(self) -> None:
        """Delete every tracked file; missing files and OS errors are ignored."""

        with self._lock:
            paths, self._paths = self._paths, []
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.debug("Could not delete scratch file %s", path, exc_info=True)
