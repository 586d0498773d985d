# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import asyncio
import functools
import os
import ssl
import stat
import time
from collections import OrderedDict
from typing import Any, Optional

import aiohttp
import aiorpcx
import certifi

from .logging import get_logger


_logger = get_logger(__name__)

ca_path = certifi.where()


def now() -> int:
    return int(time.time())


def user_dir() -> Optional[str]:
    if "LND_NWC_DIR" in os.environ:
        return os.environ["LND_NWC_DIR"]
    elif os.name == 'posix':
        return os.path.join(os.environ["HOME"], ".lnd-nwc")
    elif "APPDATA" in os.environ:
        return os.path.join(os.environ["APPDATA"], "lnd-nwc")
    elif "LOCALAPPDATA" in os.environ:
        return os.path.join(os.environ["LOCALAPPDATA"], "lnd-nwc")
    else:
        return None


def make_dir(path, allow_symlink=True):
    """Make directory if it does not yet exist."""
    if not os.path.exists(path):
        if not allow_symlink and os.path.islink(path):
            raise Exception('Dangling link: ' + path)
        os.mkdir(path)
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR)


def is_hex_str(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    try:
        b = bytes.fromhex(text)
    except Exception:
        return False
    # forbid whitespaces in text:
    if len(text) != 2 * len(b):
        return False
    return True


def is_hex_of_length(text: Any, num_bytes: int) -> bool:
    return is_hex_str(text) and len(text) == 2 * num_bytes


def log_exceptions(func):
    """Decorator to log AND re-raise exceptions."""
    assert asyncio.iscoroutinefunction(func), 'func needs to be a coroutine'
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        self = args[0] if len(args) > 0 else None
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError as e:
            raise
        except BaseException as e:
            mylogger = self.logger if hasattr(self, 'logger') else _logger
            try:
                mylogger.exception(f"Exception in {func.__name__}: {repr(e)}")
            except BaseException as e2:
                print(f"logging exception raised: {repr(e2)}... orig exc: {repr(e)} in {func.__name__}")
            raise
    return wrapper


def make_aiohttp_session(*, headers=None, timeout=None, cafile: Optional[str] = None) -> aiohttp.ClientSession:
    """Creates a session trusting cafile, or the certifi bundle if not given.

    Without an explicit timeout there is no total timeout, only a connect
    timeout, as some of our requests are long-lived streams.
    """
    if headers is None:
        headers = {'User-Agent': 'lnd-nwc'}
    if timeout is None:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=30)
    elif isinstance(timeout, (int, float)):
        timeout = aiohttp.ClientTimeout(total=timeout)
    ssl_context = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH, cafile=cafile or ca_path)
    connector = aiohttp.TCPConnector(ssl=ssl_context)
    return aiohttp.ClientSession(headers=headers, timeout=timeout, connector=connector)


class OldTaskGroup(aiorpcx.TaskGroup):
    """Automatically raises exceptions on join; as in aiorpcx prior to version 0.20.
    That is, when using TaskGroup as a context manager, if any task encounters an exception,
    we would like that exception to be re-raised (propagated out).
    """
    async def join(self):
        if self._wait is all:
            exc = False
            try:
                async for task in self:
                    if not task.cancelled():
                        task.result()
            except BaseException:  # including asyncio.CancelledError
                exc = True
                raise
            finally:
                if exc:
                    await self.cancel_remaining()
                await super().join()
        else:
            await super().join()
            if self.completed:
                self.completed.result()


class ServiceTaskGroup(OldTaskGroup):
    """Task group that tasks are spawned into for the lifetime of a service.

    Finished tasks are reaped as they complete, instead of being retained
    until join(). Exceptions of reaped tasks are logged, not re-raised.
    """

    def __init__(self, *args, **kwargs):
        OldTaskGroup.__init__(self, *args, **kwargs)
        self._spawned = asyncio.Event()
        self._reaper = None  # type: Optional[asyncio.Task]

    async def spawn(self, coro, *args, daemon=False):
        task = await super().spawn(coro, *args, daemon=daemon)
        if self._reaper is None:
            self._reaper = asyncio.get_running_loop().create_task(self._reap())
        self._spawned.set()
        return task

    async def _reap(self) -> None:
        while True:
            task = await self.next_done()
            if task is None:
                # nothing in flight
                self._spawned.clear()
                await self._spawned.wait()
                continue
            if not task.cancelled() and task.exception() is not None:
                _logger.error(f"task {task.get_name()} failed", exc_info=task.exception())

    async def _stop_reaping(self) -> None:
        # join() must be the only consumer of next_done()
        reaper, self._reaper = self._reaper, None
        if reaper is not None:
            reaper.cancel()
            await asyncio.wait([reaper])

    async def join(self):
        await self._stop_reaping()
        await super().join()


class BoundedSet:
    """Insertion-ordered set that forgets its oldest members beyond maxsize."""

    def __init__(self, maxsize: int):
        assert maxsize > 0, maxsize
        self._maxsize = maxsize
        self._items = OrderedDict()

    def add(self, item) -> bool:
        """Adds item. Returns False if it was already present."""
        if item in self._items:
            return False
        self._items[item] = None
        while len(self._items) > self._maxsize:
            self._items.popitem(last=False)
        return True

    def __contains__(self, item) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)
