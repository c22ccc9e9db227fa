"""Per-job progress state with subscriptions and retention.

WHY: An export runs through several stages of very different length
(frame extraction, overlay rendering, encoding). Clients want one
percentage that only moves forward and a clear terminal signal. Several
workers report concurrently, and an HTTP stream may subscribe at any time,
including after the job has finished.

HOW: Each stage owns a fixed band of the 0–100 range (STAGE_BANDS). A
StageReporter turns a stage's local fraction into a global percentage.
ProgressStore keeps only the latest ProgressState per job id, publishes
every accepted update to that job's subscribers, and forgets the job once
its retention deadline (pushed back on every update) has passed.

RULES:
- percent never decreases within a job; lower values are raised to the current one
- complete() and fail() always publish percent 100; later updates are ignored
- subscribe() immediately replays the current state, if any
- A failing subscriber callback is logged and never breaks the publisher
- All methods are safe to call from multiple threads
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from caption_export.config import PROGRESS_RETENTION_S

logger = logging.getLogger(__name__)


class Stage(str, enum.Enum):
    """Export stages, in pipeline order, plus the two terminal stages."""

    INIT = "init"
    FRAMES = "frames"
    CAPTIONS = "captions"
    ENCODE = "encode"
    FINALIZE = "finalize"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ERROR)


STAGE_BANDS: Dict[Stage, tuple] = {
    Stage.INIT: (0.0, 10.0),
    Stage.FRAMES: (10.0, 30.0),
    Stage.CAPTIONS: (30.0, 70.0),
    Stage.ENCODE: (70.0, 95.0),
    Stage.FINALIZE: (95.0, 100.0),
}


def band_percent(stage: Stage, fraction: float) -> float:
    """Map a stage-local fraction in [0, 1] into the global percentage."""
    low, high = STAGE_BANDS[stage]
    fraction = min(max(fraction, 0.0), 1.0)
    return round(low + fraction * (high - low), 2)


@dataclass(frozen=True)
class ProgressState:
    """Latest published progress of one job."""

    percent: float
    stage: Stage
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"progress": self.percent, "stage": self.stage.value}
        if self.message:
            data["message"] = self.message
        return data


ProgressCallback = Callable[[ProgressState], None]


class ProgressStore:
    """Thread-safe latest-state store keyed by job id.

    WHY: Workers, the export orchestrator, and HTTP progress streams all
    touch the same job's progress from different threads. One store with a
    lock gives them a consistent, monotonic view without any global state.

    HOW: A dict of ProgressState, a dict of subscriber lists, and a dict of
    expiry deadlines (time.time() based, like JobStore's TTL), all guarded
    by one RLock. An expired job is dropped when it is next touched and by
    cleanup_expired(), which the HTTP service calls periodically. Callbacks
    run under the lock so every subscriber sees updates in publication
    order; the lock is re-entrant so a callback may read the store.

    RULES:
    - set() returns the state actually stored (which may differ from the
      arguments after monotonic clamping), or the existing terminal state
      when the update is ignored
    - Every accepted update pushes that job's deadline to now + retention_s
    - Expiry drops the state only; live subscribers keep their registration
    - discard() drops state, subscribers, and deadline for one job
    - close() empties the store
    """

    def __init__(self, retention_s: float = PROGRESS_RETENTION_S) -> None:
        self._states: Dict[str, ProgressState] = {}
        self._subscribers: Dict[str, List[ProgressCallback]] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._retention_s = retention_s

    def set(
        self,
        job_id: str,
        percent: float,
        stage: Stage,
        message: Optional[str] = None,
    ) -> ProgressState:
        """Publish a new state for job_id."""
        stage = Stage(stage)
        with self._lock:
            now = time.time()
            self._expire_if_due(job_id, now)
            current = self._states.get(job_id)
            if current is not None and current.is_terminal:
                logger.debug(
                    "Ignoring %s update for finished job %s", stage.value, job_id
                )
                return current

            percent = min(max(float(percent), 0.0), 100.0)
            if stage.is_terminal:
                percent = 100.0
            elif current is not None:
                percent = max(percent, current.percent)

            state = ProgressState(percent=percent, stage=stage, message=message)
            self._states[job_id] = state
            self._expires_at[job_id] = now + self._retention_s
            self._notify(job_id, state, list(self._subscribers.get(job_id, ())))
            return state

    def complete(self, job_id: str, message: str = "Export complete") -> ProgressState:
        return self.set(job_id, 100.0, Stage.COMPLETE, message)

    def fail(self, job_id: str, message: str) -> ProgressState:
        return self.set(job_id, 100.0, Stage.ERROR, message)

    def get(self, job_id: str) -> Optional[ProgressState]:
        """Return the latest state for job_id, or None if unknown or expired."""
        with self._lock:
            self._expire_if_due(job_id, time.time())
            return self._states.get(job_id)

    def subscribe(
        self,
        job_id: str,
        callback: ProgressCallback,
    ) -> Callable[[], None]:
        """Register callback for job_id and return a function that removes it.

        The current state, if any, is delivered to the callback before this
        method returns.
        """
        with self._lock:
            self._expire_if_due(job_id, time.time())
            self._subscribers.setdefault(job_id, []).append(callback)
            current = self._states.get(job_id)
            if current is not None:
                self._notify(job_id, current, [callback])

        def unsubscribe() -> None:
            self.unsubscribe(job_id, callback)

        return unsubscribe

    def unsubscribe(self, job_id: str, callback: ProgressCallback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(job_id)
            if not callbacks:
                return
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[job_id]

    def cleanup_expired(self) -> int:
        """Drop every job whose retention deadline has passed.

        Returns the number of jobs removed.
        """
        with self._lock:
            now = time.time()
            expired = [j for j, deadline in self._expires_at.items() if now >= deadline]
            for job_id in expired:
                self._expire_if_due(job_id, now)
        return len(expired)

    def discard(self, job_id: str) -> None:
        """Forget everything about job_id."""
        with self._lock:
            self._states.pop(job_id, None)
            self._subscribers.pop(job_id, None)
            self._expires_at.pop(job_id, None)
        logger.debug("Discarded progress for job %s", job_id)

    def close(self) -> None:
        """Clear the store."""
        with self._lock:
            self._states.clear()
            self._subscribers.clear()
            self._expires_at.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(
        self,
        job_id: str,
        state: ProgressState,
        callbacks: List[ProgressCallback],
    ) -> None:
        for callback in callbacks:
            try:
                callback(state)
            except Exception:
                logger.exception("Progress callback failed for job %s", job_id)

    def _expire_if_due(self, job_id: str, now: float) -> None:
        # Caller holds the lock
        deadline = self._expires_at.get(job_id)
        if deadline is None or now < deadline:
            return
        del self._expires_at[job_id]
        self._states.pop(job_id, None)
        logger.info("Progress for job %s expired", job_id)


class StageReporter:
    """Report one stage's local progress into the job's global percentage.

    Instances are callables taking a fraction in [0, 1], so they can be
    passed directly as on_progress callbacks to the media and overlay
    layers.
    """

    def __init__(
        self,
        store: ProgressStore,
        job_id: str,
        stage: Stage,
        message: Optional[str] = None,
    ) -> None:
        if stage.is_terminal:
            raise ValueError("Terminal stages have no band: {}".format(stage.value))
        self.store = store
        self.job_id = job_id
        self.stage = stage
        self.message = message

    def __call__(self, fraction: float, message: Optional[str] = None) -> ProgressState:
        return self.store.set(
            self.job_id,
            band_percent(self.stage, fraction),
            self.stage,
            message or self.message,
        )

    def start(self) -> ProgressState:
        return self(0.0)

    def done(self) -> ProgressState:
        return self(1.0)
