"""Background work with completions handed back to the main thread."""

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Completion:
    """Result of one piece of deferred work, waiting to be delivered."""

    done: Callable[[Any], None] | None
    result: Any = None
    error: BaseException | None = None


class BackgroundWorker:
    """
    Runs blocking work on daemon threads.

    ``work`` runs off the main thread and must not touch shared state. Its
    result is pushed to a thread-safe Queue, and ``done`` is only called
    from ``drain()``, which the owner runs on the main thread.
    """

    def __init__(self, name: str = "Terminator") -> None:
        self._name = name
        self._completions: Queue[Completion] = Queue()
        self._counter = itertools.count(1)
        self._outstanding = 0

    @property
    def outstanding(self) -> int:
        """Number of deferred jobs whose completion has not been delivered yet."""
        return self._outstanding

    def defer(self, work: Callable[[], Any], done: Callable[[Any], None] | None = None) -> None:
        """Run ``work`` in the background and queue ``done`` for the main thread."""
        self._outstanding += 1
        thread = threading.Thread(
            target=self._run,
            args=(work, done),
            daemon=True,
            name=f"{self._name}-{next(self._counter)}",
        )
        thread.start()

    def _run(self, work: Callable[[], Any], done: Callable[[Any], None] | None) -> None:
        try:
            self._completions.put(Completion(done, result=work()))
        except Exception as exc:
            self._completions.put(Completion(done, error=exc))

    def drain(self, timeout: float | None = None) -> int:
        """
        Deliver queued completions on the calling thread.

        Args:
            timeout: Seconds to wait for the first completion. None returns
                immediately when nothing is queued.

        Returns:
            The number of completions delivered.

        Raises:
            Exception: Whatever the deferred work raised, once its
                completion is reached.
        """
        delivered = 0
        block = timeout is not None
        while True:
            try:
                completion = self._completions.get(block=block, timeout=timeout)
            except Empty:
                return delivered
            block = False
            self._outstanding -= 1
            delivered += 1
            if completion.error is not None:
                logger.error("Background work failed: %s", completion.error)
                raise completion.error
            if completion.done is not None:
                completion.done(completion.result)

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """
        Drain until nothing is outstanding, including work started by callbacks.

        Returns:
            True if the worker went idle before ``timeout`` seconds passed.
        """
        deadline = time.monotonic() + timeout
        while self._outstanding > 0:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.drain(timeout=min(remaining, 0.1))
        return True
