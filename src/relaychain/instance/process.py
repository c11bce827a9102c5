"""Guarded process pool for backend helper binaries."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from relaychain.errors import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_FAST_FAIL_SECONDS = 1.0
DEFAULT_RESTART_DELAY_SECONDS = 1.0
_TERMINATE_WAIT_SECONDS = 2


class ProcessSupervisor(Protocol):
    """Protocol implemented by process pools."""

    def start(self, args: Sequence[str]) -> ManagedProcess:
        """Spawn ``args`` and keep it tracked until ``close``."""

    def close(self) -> None:
        """Terminate every tracked process."""


class ManagedProcess:
    """A tracked process that is restarted when it dies after running a while."""

    def __init__(self, args: Sequence[str]) -> None:
        self.args = tuple(args)
        self.name = Path(self.args[0]).name
        self.restarts = 0
        self._process: subprocess.Popen[str] | None = None
        self._started_at = 0.0
        self.watcher: threading.Thread | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def spawn(self) -> None:
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as error:
            raise SpawnError(f"Backend command not found: {self.args[0]}", transient=False) from error
        except OSError as error:
            raise SpawnError(f"Backend failed to start: {error}", transient=True) from error
        self._started_at = time.monotonic()
        logger.debug("Started %s pid=%s", self.name, self._process.pid)

    def terminate(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            process.terminate()
        except OSError:
            return
        try:
            process.wait(timeout=_TERMINATE_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            try:
                process.kill()
            except OSError:
                return
            try:
                process.wait(timeout=_TERMINATE_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("%s pid=%s did not exit after kill", self.name, process.pid)


class ProcessPool:
    """Spawns and watches backend processes; ``close`` kills them all.

    A process that exits while the pool is open is restarted after
    ``restart_delay_seconds``, unless it died within ``fast_fail_seconds``
    of being spawned, in which case it is reported and left down.
    """

    def __init__(
        self,
        *,
        fast_fail_seconds: float = DEFAULT_FAST_FAIL_SECONDS,
        restart_delay_seconds: float = DEFAULT_RESTART_DELAY_SECONDS,
    ) -> None:
        self._fast_fail_seconds = fast_fail_seconds
        self._restart_delay_seconds = restart_delay_seconds
        self._processes: list[ManagedProcess] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def processes(self) -> tuple[ManagedProcess, ...]:
        with self._lock:
            return tuple(self._processes)

    def start(self, args: Sequence[str]) -> ManagedProcess:
        if not args:
            raise SpawnError("Cannot start an empty command.", transient=False)
        managed = ManagedProcess(args)
        with self._lock:
            if self._stop.is_set():
                raise SpawnError("Process pool is closed.", transient=False)
            managed.spawn()
            self._processes.append(managed)
        managed.watcher = threading.Thread(
            target=self._watch,
            args=(managed,),
            daemon=True,
            name=f"pool-{managed.name}",
        )
        managed.watcher.start()
        return managed

    def close(self) -> None:
        with self._lock:
            self._stop.set()
            processes = list(self._processes)
            self._processes.clear()
        for managed in processes:
            managed.terminate()
        for managed in processes:
            if managed.watcher is not None:
                managed.watcher.join(timeout=_TERMINATE_WAIT_SECONDS)
        if processes:
            logger.info("Process pool closed: terminated=%d", len(processes))

    def _watch(self, managed: ManagedProcess) -> None:
        while True:
            process = managed._process
            if process is None:
                return
            if process.stdout is not None:
                for line in process.stdout:
                    logger.debug("[%s] %s", managed.name, line.rstrip())
            returncode = process.wait()
            if process.stdout is not None:
                process.stdout.close()
            if self._stop.is_set():
                return

            alive_for = time.monotonic() - managed._started_at
            if alive_for < self._fast_fail_seconds:
                logger.error(
                    "%s exited after %.1fs with code %s; not restarting",
                    managed.name,
                    alive_for,
                    returncode,
                )
                return
            logger.warning(
                "%s exited with code %s; restarting in %.1fs",
                managed.name,
                returncode,
                self._restart_delay_seconds,
            )
            if self._stop.wait(timeout=self._restart_delay_seconds):
                return
            with self._lock:
                if self._stop.is_set():
                    return
                try:
                    managed.spawn()
                except SpawnError:
                    logger.exception("Could not restart %s", managed.name)
                    return
                managed.restarts += 1
