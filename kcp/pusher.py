"""Non-blocking outbound status delivery from a Kubelet to the Master."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

from kcp.interfaces import MasterConnection
from kcp.model import Node, Pod

logger = logging.getLogger(__name__)


@dataclass
class _Push:
    kind: str  # pod | node
    key: str
    seq: int
    resource: object
    attempts: int = 0
    not_before: float = 0.0


class StatusPusher:
    """FIFO of status updates delivered on a background thread.

    Enqueueing never blocks on the connection. A failed delivery is retried
    with backoff unless a newer update for the same object is already
    queued, in which case the stale one is dropped.
    """

    def __init__(
        self,
        conn: MasterConnection,
        retry_backoff_s: float = 0.5,
        max_backoff_s: float = 10.0,
        name: str = "status-pusher",
    ) -> None:
        self.conn = conn
        self.retry_backoff_s = retry_backoff_s
        self.max_backoff_s = max_backoff_s
        self.name = name

        self._cond = threading.Condition()
        self._queue: Deque[_Push] = deque()
        self._latest: Dict[Tuple[str, str], int] = {}
        self._seq = itertools.count(1)
        self._inflight = 0
        self.delivered = 0
        self.failures = 0

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # -------- enqueue --------

    def push_pod(self, pod: Pod) -> None:
        self._enqueue("pod", pod.key, copy.deepcopy(pod))

    def push_node(self, node: Node) -> None:
        self._enqueue("node", node.key, copy.deepcopy(node))

    def _enqueue(self, kind: str, key: str, resource: object) -> None:
        with self._cond:
            seq = next(self._seq)
            self._latest[(kind, key)] = seq
            self._queue.append(_Push(kind=kind, key=key, seq=seq, resource=resource))
            self._cond.notify_all()

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue) + self._inflight

    # -------- lifecycle --------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread:
            self._thread.join(timeout=2.0)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            item = self._next_due(wait=True)
            if item is not None:
                self._deliver(item)

    # -------- delivery --------

    def drain(self) -> int:
        """Deliver every item that is due, in the caller's thread."""
        count = 0
        while True:
            item = self._next_due(wait=False)
            if item is None:
                return count
            self._deliver(item)
            count += 1

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until the queue is empty. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._queue or self._inflight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(min(remaining, 0.05))
        return True

    def _next_due(self, wait: bool) -> Optional[_Push]:
        with self._cond:
            while not self._stop_event.is_set():
                now = time.monotonic()
                for item in list(self._queue):
                    if item.attempts and self._latest.get((item.kind, item.key), item.seq) > item.seq:
                        # a retry overtaken by a newer status for the same object
                        self._queue.remove(item)
                        continue
                    if item.not_before <= now:
                        self._queue.remove(item)
                        self._inflight += 1
                        return item
                if not wait:
                    return None
                timeout = 0.5
                if self._queue:
                    timeout = max(0.01, min(i.not_before for i in self._queue) - now)
                self._cond.wait(timeout)
            return None

    def _deliver(self, item: _Push) -> None:
        try:
            if item.kind == "pod":
                self.conn.update_pod(item.resource)  # type: ignore[arg-type]
            else:
                self.conn.update_node(item.resource)  # type: ignore[arg-type]
        except Exception as e:
            self.failures += 1
            self._retry(item, e)
        else:
            self.delivered += 1
            logger.debug(f"Pushed {item.kind} {item.key} (seq {item.seq})")
            with self._cond:
                # nothing newer queued for this object
                if self._latest.get((item.kind, item.key)) == item.seq:
                    del self._latest[(item.kind, item.key)]
        finally:
            with self._cond:
                self._inflight -= 1
                self._cond.notify_all()

    def _retry(self, item: _Push, error: Exception) -> None:
        with self._cond:
            if self._latest.get((item.kind, item.key), item.seq) > item.seq:
                logger.warning(f"Dropping failed {item.kind} push for {item.key}, newer status queued: {error}")
                return
            item.attempts += 1
            delay = min(self.max_backoff_s, self.retry_backoff_s * (2 ** (item.attempts - 1)))
            item.not_before = time.monotonic() + delay
            self._queue.append(item)
        logger.error(f"Failed to push {item.kind} {item.key} (attempt {item.attempts}), retrying in {delay:.2f}s: {error}")
