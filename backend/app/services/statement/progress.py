"""In-process progress fan-out keyed by job id.

One ``ProgressBroadcaster`` instance is owned by the application (see
``app.state.progress_broadcaster``); tests and scripts construct their own.
Fan-out is synchronous and in-memory: it is neither durable nor shared
between processes, so a multi-instance deployment needs an external broker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from threading import Lock
from typing import Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TERMINAL_STEPS = frozenset({"completed", "error"})


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProgressEvent(BaseModel):
    job_id: str
    step: str
    percentage: int = Field(ge=0, le=100)
    message: str = ""
    timestamp: int = Field(default_factory=_now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.percentage >= 100 and self.step in TERMINAL_STEPS


ProgressListener = Callable[[ProgressEvent], None]


class ProgressBroadcaster:
    def __init__(self) -> None:
        self._latest: dict[str, ProgressEvent] = {}
        self._listeners: dict[str, list[ProgressListener]] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._lock = Lock()

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        """Store *event* as the latest for *job_id* and hand it to every listener in order."""
        with self._lock:
            self._latest[job_id] = event
            listeners = list(self._listeners.get(job_id, ()))
            handle = self._cleanup_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

        logger.debug("Progress %s step=%s %d%% listeners=%d", job_id, event.step, event.percentage, len(listeners))
        for listener in listeners:
            self._deliver(job_id, listener, event)

    def publish_step(self, job_id: str, step: str, percentage: int, message: str = "") -> ProgressEvent:
        event = ProgressEvent(job_id=job_id, step=step, percentage=percentage, message=message)
        self.publish(job_id, event)
        return event

    def subscribe(self, job_id: str, listener: ProgressListener) -> None:
        """Register *listener*; replay the latest event to it if one exists."""
        with self._lock:
            listeners = self._listeners.setdefault(job_id, [])
            if listener not in listeners:
                listeners.append(listener)
            current = self._latest.get(job_id)
        if current is not None:
            self._deliver(job_id, listener, current)

    def unsubscribe(self, job_id: str, listener: ProgressListener) -> None:
        with self._lock:
            listeners = self._listeners.get(job_id)
            if listeners is None:
                return
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                del self._listeners[job_id]

    def cleanup(self, job_id: str) -> None:
        """Forget the latest event and every listener for *job_id*."""
        with self._lock:
            self._latest.pop(job_id, None)
            self._listeners.pop(job_id, None)
            handle = self._cleanup_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def schedule_cleanup(self, job_id: str, delay_seconds: float) -> None:
        """Run :meth:`cleanup` for *job_id* after *delay_seconds* on the running loop."""
        if delay_seconds <= 0:
            self.cleanup(job_id)
            return
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay_seconds, self.cleanup, job_id)
        with self._lock:
            previous = self._cleanup_handles.pop(job_id, None)
            self._cleanup_handles[job_id] = handle
        if previous is not None:
            previous.cancel()

    def latest(self, job_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(job_id)

    def listener_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(job_id, ()))

    def job_ids(self) -> list[str]:
        with self._lock:
            return sorted(set(self._latest) | set(self._listeners))

    @staticmethod
    def _deliver(job_id: str, listener: ProgressListener, event: ProgressEvent) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception("Progress listener failed for job %s", job_id)
