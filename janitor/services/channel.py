from __future__ import annotations

import threading
from queue import Empty, Full, Queue
from typing import Generic, Iterator, Optional, TypeVar

T = TypeVar("T")

_ITEM = "item"
_DONE = "done"
_ERROR = "error"


class Channel(Generic[T]):
    """Thread-to-thread stream of items closed by the producer.

    ``maxsize=0`` gives an unbounded channel whose producer never blocks.
    A bounded channel applies backpressure: ``send`` blocks while the
    consumer is behind, waking every ``poll_interval`` to honour ``cancel``.
    An error passed to ``close`` is re-raised in the consumer after the items
    sent before it have been drained.
    """

    def __init__(
        self,
        maxsize: int = 0,
        cancel: Optional[threading.Event] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._queue: Queue[tuple[str, object]] = Queue(maxsize=maxsize)
        self.cancel = cancel or threading.Event()
        self.poll_interval = poll_interval

    def _put(self, message: tuple[str, object]) -> bool:
        while True:
            if self.cancel.is_set():
                return False
            try:
                self._queue.put(message, timeout=self.poll_interval)
                return True
            except Full:
                continue

    def send(self, item: T) -> bool:
        """Returns False when the channel was cancelled and the item dropped."""
        return self._put((_ITEM, item))

    def close(self, error: Optional[BaseException] = None) -> None:
        if error is None:
            self._put((_DONE, None))
        else:
            self._put((_ERROR, error))

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                kind, data = self._queue.get(timeout=self.poll_interval)
            except Empty:
                if self.cancel.is_set():
                    return
                continue
            if kind == _ITEM:
                yield data  # type: ignore[misc]
            elif kind == _ERROR:
                raise data  # type: ignore[misc]
            else:
                return
