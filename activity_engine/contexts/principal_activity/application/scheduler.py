from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from flask import Flask

from activity_engine.errors import AppError, BuildTimeoutError, SnapshotStoreCorruptedError, SourceUnavailableError
from activity_engine.observability import (
    bind_request_id,
    observe_rebuild,
    observe_rebuild_gave_up,
    observe_rebuild_retry,
    observe_refresh_coalesced,
    observe_refresh_requested,
)


logger = logging.getLogger("activity_engine")

# Returns the committed snapshot version, or None when derived data was discarded.
RebuildFn = Callable[[str], "int | None"]

MAX_COALESCE_SECONDS = 2.0


@dataclass(frozen=True)
class RefreshOutcome:
    principal_id: str
    succeeded: bool
    version: int | None = None
    attempts: int = 0
    error: str | None = None
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "principal_id": self.principal_id,
            "succeeded": self.succeeded,
            "version": self.version,
            "attempts": self.attempts,
            "error": self.error,
            "timed_out": self.timed_out,
        }


class _Waiter:
    def __init__(self, principal_id: str, seq: int) -> None:
        self.principal_id = principal_id
        self.seq = seq
        self.event = threading.Event()
        self.outcome: RefreshOutcome | None = None

    def resolve(self, outcome: RefreshOutcome) -> None:
        self.outcome = outcome
        self.event.set()


@dataclass
class _PrincipalState:
    pending: bool = False
    due_at: float = 0.0
    running: bool = False
    rerun: bool = False
    rerun_immediate: bool = False
    failures: int = 0
    request_seq: int = 0
    waiters: List[_Waiter] = field(default_factory=list)

    def is_idle(self) -> bool:
        return not (self.pending or self.running or self.waiters or self.failures)


class RefreshScheduler:
    """Coalesces refresh requests and runs at most one rebuild per principal at a time.

    A dispatcher thread hands due principals to a bounded worker pool. When the
    scheduler is not started, ``refresh_now`` runs the rebuild in the caller's thread.
    """

    def __init__(
        self,
        rebuild: RebuildFn,
        *,
        coalesce_seconds: float = 0.5,
        max_attempts: int = 4,
        min_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        max_workers: int = 4,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rebuild = rebuild
        self.coalesce_seconds = max(0.0, min(float(coalesce_seconds), MAX_COALESCE_SECONDS))
        self.max_attempts = max(1, min(int(max_attempts), 10))
        self.min_backoff_seconds = max(0.0, float(min_backoff_seconds))
        self.max_backoff_seconds = max(self.min_backoff_seconds, float(max_backoff_seconds))
        self.max_workers = max(1, min(int(max_workers), 32))
        self._monotonic = monotonic

        self._cond = threading.Condition()
        self._states: Dict[str, _PrincipalState] = {}
        self._stopping = False
        self._fatal: SnapshotStoreCorruptedError | None = None
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    # Lifecycle

    @property
    def started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._cond:
            if self.started:
                return
            self._stopping = False
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="principal-refresh")
            self._thread = threading.Thread(target=self._dispatch_loop, name="principal-refresh-dispatcher", daemon=True)
            self._thread.start()

    def stop(self, wait: bool = True) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0 if wait else 0.0)
        self._thread = None
        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)
        with self._cond:
            for principal_id, state in self._states.items():
                self._release_waiters(state, principal_id, None, succeeded=False, error="scheduler_stopped")
            self._cond.notify_all()

    # Requests

    def request_refresh(self, principal_id: str) -> None:
        principal_id = str(principal_id or "").strip()
        if not principal_id:
            return
        observe_refresh_requested("coalesced")
        with self._cond:
            if self._fatal is not None:
                logger.error("principal_refresh_rejected_fatal", extra={"principal_id": principal_id})
                return
            state = self._states.setdefault(principal_id, _PrincipalState())
            state.request_seq += 1
            if state.running:
                if state.rerun:
                    observe_refresh_coalesced()
                state.rerun = True
            elif state.pending:
                observe_refresh_coalesced()
            else:
                state.pending = True
                state.due_at = self._monotonic() + self.coalesce_seconds
            self._cond.notify_all()

    def refresh_now(self, principal_id: str, wait: bool = True, timeout: float | None = None) -> RefreshOutcome | None:
        principal_id = str(principal_id or "").strip()
        observe_refresh_requested("explicit")
        with self._cond:
            if self._fatal is not None:
                return RefreshOutcome(principal_id=principal_id, succeeded=False, error=self._fatal.code)
            state = self._states.setdefault(principal_id, _PrincipalState())
            state.request_seq += 1
            waiter = _Waiter(principal_id, state.request_seq)
            state.waiters.append(waiter)
            if state.running:
                state.rerun = True
                state.rerun_immediate = True
            else:
                now = self._monotonic()
                state.due_at = min(state.due_at, now) if state.pending else now
                state.pending = True
            self._cond.notify_all()

        if not wait:
            if not self.started:
                logger.info("principal_refresh_deferred", extra={"principal_id": principal_id})
            return None

        deadline = None if timeout is None else self._monotonic() + max(0.0, float(timeout))
        if not self.started:
            self._drain_inline(principal_id, waiter, deadline)
        remaining = None if deadline is None else max(0.0, deadline - self._monotonic())
        if not waiter.event.wait(remaining):
            with self._cond:
                state = self._states.get(principal_id)
                if state is not None and waiter in state.waiters:
                    state.waiters.remove(waiter)
            return RefreshOutcome(principal_id=principal_id, succeeded=False, error="timeout", timed_out=True)
        return waiter.outcome

    # Introspection

    def state(self, principal_id: str) -> dict:
        with self._cond:
            state = self._states.get(principal_id) or _PrincipalState()
            return {
                "principal_id": principal_id,
                "pending": state.pending,
                "running": state.running,
                "rerun": state.rerun,
                "failures": state.failures,
                "waiters": len(state.waiters),
            }

    def pending_count(self) -> int:
        with self._cond:
            return sum(1 for state in self._states.values() if state.pending)

    def queue_state(self) -> dict:
        with self._cond:
            return {
                "pending": sum(1 for state in self._states.values() if state.pending),
                "running": sum(1 for state in self._states.values() if state.running),
                "started": self.started,
                "fatal": self._fatal.code if self._fatal is not None else None,
            }

    def wait_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else self._monotonic() + timeout
        with self._cond:
            while any(state.pending or state.running for state in self._states.values()):
                remaining = None if deadline is None else deadline - self._monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining if remaining is not None else 0.5)
            return True

    # Execution

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                if self._stopping or self._fatal is not None:
                    return
                now = self._monotonic()
                due = [
                    principal_id
                    for principal_id, state in self._states.items()
                    if state.pending and not state.running and state.due_at <= now
                ]
                claimed = [(principal_id, self._claim(principal_id)) for principal_id in due]
                if not claimed:
                    next_due = min(
                        (state.due_at for state in self._states.values() if state.pending and not state.running),
                        default=None,
                    )
                    self._cond.wait(None if next_due is None else max(0.0, next_due - now))
                    continue
                executor = self._executor

            for index, (principal_id, covered_seq) in enumerate(claimed):
                try:
                    executor.submit(self._run_claimed, principal_id, covered_seq)
                except RuntimeError:
                    # Executor already shut down: hand the unsubmitted claims back.
                    with self._cond:
                        for unsubmitted_id, _ in claimed[index:]:
                            self._states[unsubmitted_id].running = False
                            self._states[unsubmitted_id].pending = True
                        self._cond.notify_all()
                    return

    def _drain_inline(self, principal_id: str, waiter: _Waiter, deadline: float | None = None) -> None:
        # Runs due rebuilds on the caller thread until the waiter resolves or the deadline passes.
        while not waiter.event.is_set():
            with self._cond:
                state = self._states.get(principal_id)
                if state is None or self._fatal is not None:
                    return
                remaining = None if deadline is None else deadline - self._monotonic()
                if remaining is not None and remaining <= 0:
                    return
                if state.running or not state.pending:
                    self._cond.wait(0.5 if remaining is None else min(0.5, remaining))
                    continue
                delay = state.due_at - self._monotonic()
                if delay > 0:
                    self._cond.wait(delay if remaining is None else min(delay, remaining))
                    continue
                covered_seq = self._claim(principal_id)
            self._run_claimed(principal_id, covered_seq)

    def _claim(self, principal_id: str) -> int:
        state = self._states[principal_id]
        state.pending = False
        state.running = True
        state.rerun = False
        state.rerun_immediate = False
        return state.request_seq

    def _run_claimed(self, principal_id: str, covered_seq: int) -> None:
        started = time.perf_counter()
        version: int | None = None
        error: Exception | None = None
        with bind_request_id(f"refresh-{uuid.uuid4().hex[:12]}"):
            logger.info("principal_rebuild_started", extra={"principal_id": principal_id})
            try:
                version = self._rebuild(principal_id)
            except Exception as exc:  # noqa: BLE001
                error = exc
            duration = time.perf_counter() - started
            observe_rebuild(_result_label(error, version), duration)
            self._complete(principal_id, covered_seq, version, error, duration)

    def _complete(
        self,
        principal_id: str,
        covered_seq: int,
        version: int | None,
        error: Exception | None,
        duration: float,
    ) -> None:
        with self._cond:
            state = self._states[principal_id]
            state.running = False
            attempts = state.failures + 1

            if isinstance(error, SnapshotStoreCorruptedError):
                self._fatal = error
                logger.critical(
                    "snapshot_store_corrupted",
                    extra={"principal_id": principal_id, "details": error.details},
                )
                for other_id, other_state in self._states.items():
                    other_state.pending = False
                    self._release_waiters(other_state, other_id, None, succeeded=False, error=error.code)
                self._cond.notify_all()
                return

            if error is None:
                state.failures = 0
                logger.info(
                    "principal_rebuild_succeeded",
                    extra={
                        "principal_id": principal_id,
                        "version": version,
                        "attempts": attempts,
                        "duration_ms": round(duration * 1000.0, 2),
                    },
                )
                self._release_waiters(state, principal_id, version, succeeded=True, attempts=attempts, up_to=covered_seq)
                self._schedule_follow_up(state)
            else:
                state.failures += 1
                logger.warning(
                    "principal_rebuild_failed",
                    extra={
                        "principal_id": principal_id,
                        "attempt": state.failures,
                        "max_attempts": self.max_attempts,
                        "error_code": error.code if isinstance(error, AppError) else type(error).__name__,
                        "details": str(error)[:500],
                    },
                )
                if state.failures < self.max_attempts:
                    backoff = min(self.max_backoff_seconds, self.min_backoff_seconds * (2 ** (state.failures - 1)))
                    observe_rebuild_retry(backoff)
                    state.pending = True
                    state.due_at = self._monotonic() + backoff
                else:
                    observe_rebuild_gave_up()
                    logger.error(
                        "principal_refresh_gave_up",
                        extra={"principal_id": principal_id, "attempts": state.failures},
                    )
                    state.failures = 0
                    code = error.code if isinstance(error, AppError) else "rebuild_failed"
                    self._release_waiters(
                        state, principal_id, None, succeeded=False, attempts=attempts, error=code, up_to=covered_seq
                    )
                    self._schedule_follow_up(state)

            if state.is_idle():
                self._states.pop(principal_id, None)
            self._cond.notify_all()

    def _schedule_follow_up(self, state: _PrincipalState) -> None:
        if state.waiters or state.rerun_immediate:
            state.pending = True
            state.due_at = self._monotonic()
        elif state.rerun:
            state.pending = True
            state.due_at = self._monotonic() + self.coalesce_seconds
        state.rerun = False
        state.rerun_immediate = False

    @staticmethod
    def _release_waiters(
        state: _PrincipalState,
        principal_id: str,
        version: int | None,
        *,
        succeeded: bool,
        attempts: int = 0,
        error: str | None = None,
        up_to: int | None = None,
    ) -> None:
        remaining: List[_Waiter] = []
        for waiter in state.waiters:
            if up_to is not None and waiter.seq > up_to:
                remaining.append(waiter)
                continue
            waiter.resolve(
                RefreshOutcome(
                    principal_id=principal_id,
                    succeeded=succeeded,
                    version=version,
                    attempts=attempts,
                    error=error,
                )
            )
        state.waiters = remaining


def _result_label(error: Exception | None, version: int | None) -> str:
    if error is None:
        return "succeeded" if version is not None else "discarded"
    if isinstance(error, BuildTimeoutError):
        return "timeout"
    if isinstance(error, SourceUnavailableError):
        return "source_unavailable"
    if isinstance(error, SnapshotStoreCorruptedError):
        return "corrupted"
    return "failed"


def build_refresh_scheduler(app: Flask, rebuild: RebuildFn) -> RefreshScheduler:
    min_backoff = _float_config(app, "REFRESH_MIN_BACKOFF_SECONDS", 1.0, 0.0, 3600.0)
    return RefreshScheduler(
        rebuild,
        coalesce_seconds=_float_config(app, "REFRESH_COALESCE_SECONDS", 0.5, 0.0, MAX_COALESCE_SECONDS),
        max_attempts=_int_config(app, "REFRESH_MAX_ATTEMPTS", 4, 1, 10),
        min_backoff_seconds=min_backoff,
        max_backoff_seconds=_float_config(app, "REFRESH_MAX_BACKOFF_SECONDS", 60.0, min_backoff, 86_400.0),
        max_workers=_int_config(app, "REFRESH_MAX_WORKERS", 4, 1, 32),
    )


def should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("REFRESH_SCHEDULER_ENABLED", True):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))


def _float_config(app: Flask, key: str, default: float, min_value: float, max_value: float) -> float:
    try:
        value = float(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
