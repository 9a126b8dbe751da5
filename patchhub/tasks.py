# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import queue
import threading

import patchhub

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

logger = patchhub.logger


class Completion:
    def __init__(self, name: str, context: int, result: Any = None, error: Optional[BaseException] = None):
        self.name = name
        self.context = context
        self.result = result
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None


class TaskRunner:
    """Runs network and process work off the interaction loop.

    Finished work is queued and only handed back when the loop calls poll(),
    so callbacks always run on the loop's thread. Work submitted under an
    older context still runs to completion, but its result is dropped once
    switch_context() has been called.
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='patchhub')
        self._done: 'queue.Queue[tuple]' = queue.Queue()
        self._lock = threading.Lock()
        self._context = 0

    @property
    def context(self) -> int:
        with self._lock:
            return self._context

    def switch_context(self) -> int:
        with self._lock:
            self._context += 1
            return self._context

    def submit(self, name: str, func: Callable[..., Any], *args,
               callback: Optional[Callable[[Completion], None]] = None, queued: bool = True, **kwargs) -> Future:
        """Run func in a worker.

        With queued the completion is handed to callback by poll(), otherwise
        the caller waits on the returned future itself.
        """
        context = self.context
        logger.debug('Starting %s in context %s', name, context)
        future = self._executor.submit(func, *args, **kwargs)
        if not queued:
            return future

        def _queue_done(fut: Future) -> None:
            error = fut.exception()
            result = None if error is not None else fut.result()
            self._done.put((Completion(name, context, result, error), callback))

        future.add_done_callback(_queue_done)
        return future

    def poll(self, timeout: Optional[float] = None) -> int:
        """Deliver queued completions, returns how many reached their callbacks."""
        delivered = 0
        block = timeout is not None
        while True:
            try:
                completion, callback = self._done.get(block=block, timeout=timeout)
            except queue.Empty:
                break
            # Only the first get may wait
            block = False
            if completion.context != self.context:
                logger.debug('Dropping stale result of %s', completion.name)
                continue
            if completion.error is not None:
                logger.debug('%s failed: %s', completion.name, completion.error)
            if callback is not None:
                callback(completion)
            delivered += 1
        return delivered

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> 'TaskRunner':
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
