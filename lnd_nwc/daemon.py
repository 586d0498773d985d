# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import asyncio
import os
import signal
from enum import Enum
from typing import Optional, TYPE_CHECKING

from aiorpcx import ignore_after

from .logging import get_logger, Logger
from .lnd import LNDRestBackend
from .nwcserver import NWCServer
from .transport import RelayTransport

if TYPE_CHECKING:
    from .lnd import PaymentBackend
    from .simple_config import SimpleConfig


_logger = get_logger(__name__)


class DaemonStatus(Enum):
    RUNNING = 'running'
    STOPPED = 'stopped'
    STALE = 'stale'  # pid file left behind by a process that is gone


class DaemonAlreadyRunning(Exception):
    pass


class DaemonNotRunning(Exception):
    pass


def read_pid(pid_file: str) -> Optional[int]:
    try:
        with open(pid_file, 'r') as f:
            return int(f.read().strip())
    except FileNotFoundError:
        return None
    except ValueError:
        # corrupt, treat like a pid file of a dead process
        return -1


def is_process_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, but belongs to someone else
        return True
    return True


def remove_pid_file(pid_file: str) -> None:
    try:
        os.unlink(pid_file)
    except FileNotFoundError:
        pass


def status(pid_file: str) -> DaemonStatus:
    """Reports the state of the daemon owning pid_file. No side effects."""
    pid = read_pid(pid_file)
    if pid is None:
        return DaemonStatus.STOPPED
    if is_process_running(pid):
        return DaemonStatus.RUNNING
    return DaemonStatus.STALE


def start(pid_file: str) -> None:
    """Claims pid_file for the current process.

    The file is created with O_EXCL, so of several concurrent starts only
    one succeeds. Fails if the file exists, even if it is stale.
    """
    try:
        fd = os.open(pid_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        if status(pid_file) == DaemonStatus.STALE:
            raise DaemonAlreadyRunning(f"stale pid file {pid_file}, run 'stop' to remove it") from None
        raise DaemonAlreadyRunning(f"daemon already running (pid file {pid_file})") from None
    with os.fdopen(fd, 'w') as f:
        f.write(str(os.getpid()))


def stop(pid_file: str) -> bool:
    """Sends SIGTERM to the daemon. Returns False if only a stale pid file was removed."""
    pid = read_pid(pid_file)
    if pid is None:
        raise DaemonNotRunning(f"no pid file at {pid_file}")
    if not is_process_running(pid):
        _logger.info(f"removing stale pid file {pid_file}")
        remove_pid_file(pid_file)
        return False
    os.kill(pid, signal.SIGTERM)
    return True


class Daemon(Logger):

    def __init__(
            self,
            config: 'SimpleConfig',
            *,
            transport: Optional[RelayTransport] = None,
            backend: Optional['PaymentBackend'] = None,
    ):
        Logger.__init__(self)
        self.config = config
        self.pid_file = config.get_pid_file()
        self.transport = transport
        self.backend = backend
        self.server = None  # type: Optional[NWCServer]
        self._stop_entered = False

    def run_daemon(self) -> None:
        """Blocks until the daemon is stopped by a signal."""
        start(self.pid_file)
        try:
            asyncio.run(self.run())
        except KeyboardInterrupt:
            self.logger.info("got KeyboardInterrupt")
        finally:
            self.logger.info("removing pid file")
            remove_pid_file(self.pid_file)

    async def run(self) -> None:
        if self.backend is None:
            self.backend = LNDRestBackend.from_config(self.config)
        if self.transport is None:
            self.transport = RelayTransport(self.config.get_service_private_key())
        sessions = self.config.get_sessions()
        if not sessions:
            self.logger.warning("no connections configured, see add_connection")
        self.server = NWCServer(
            self.transport,
            self.backend,
            sessions,
            payment_timeout=self.config.PAYMENT_TIMEOUT,
        )
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.server.stop)
            except NotImplementedError:
                pass  # windows
        self.logger.info(f"starting, serving {len(sessions)} connections")
        try:
            await self.server.run()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stops serving, then closes the transport and the backend.

        Requests in flight are answered before run() returns. Settlement
        watchers are given watcher_shutdown_grace seconds to finish and are
        cancelled after that, as the process is exiting. A cancelled watcher
        only loses its push notification, clients still get the settled
        state from lookup_invoice.
        """
        if self._stop_entered:
            return
        self._stop_entered = True
        self.logger.info("stop() entered. initiating shutdown")
        try:
            if self.server:
                self.server.stop()
                grace = self.config.WATCHER_SHUTDOWN_GRACE
                self.logger.info(f"giving settlement watchers {grace}s")
                async with ignore_after(grace):
                    await self.server.notifier.join_watchers()
                await self.server.notifier.cancel_watchers()
        finally:
            if self.transport:
                await self.transport.close()
            if self.backend:
                await self.backend.close()
            self.logger.info("stopped")
