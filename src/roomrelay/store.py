"""Async access to the persistence gateway.

Every store call runs on one dedicated worker thread, which serializes all
reads and writes. A function submitted here runs to completion before the
next one starts, so a small "re-read, validate, write" function is atomic
with respect to every other store call.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from . import db
from .errors import PersistenceFailure
from .metrics import timed_db_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncStore:
    """Runs synchronous db functions on a single-worker executor."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="roomrelay-db")
        self._closed = False

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` on the store thread and return its result.

        ``sqlite3.Error`` is converted to PersistenceFailure. Any other
        exception, including RelayError subclasses raised by the function,
        propagates unchanged.
        """
        loop = asyncio.get_running_loop()
        name = getattr(fn, "__name__", type(fn).__name__)
        call = functools.partial(self._timed, name, fn, args, kwargs)
        try:
            return await loop.run_in_executor(self._executor, call)
        except sqlite3.Error as e:
            logger.error(f"Store operation {name} failed: {e}", exc_info=True)
            raise PersistenceFailure() from e

    @staticmethod
    def _timed(name: str, fn: Callable[..., T], args: tuple, kwargs: dict) -> T:
        with timed_db_operation(name):
            return fn(*args, **kwargs)

    def close(self) -> None:
        """Close the worker thread's connection and stop the executor."""
        if self._closed:
            return
        self._closed = True
        try:
            self._executor.submit(db.close_thread_connection).result()
        finally:
            self._executor.shutdown(wait=True)
