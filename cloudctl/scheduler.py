"""
Background task scheduler.

Runs a small, fixed set of background operations (refresh, profile
activation, SSO login, resource actions, auto-stop) on daemon worker threads
and hands their results back to the main loop through one inbound queue.

Rules:
- single-flight: at most one Running operation per key
- every submission bumps the key's generation; a completion whose generation
  is no longer current, or whose operation was cancelled, is discarded
- workers never touch shared state; the operation table and the auto-stop
  schedule are only mutated from the main loop (submit/cancel/drain/tick)
- cancellation is cooperative: the worker's token is set and its result is
  dropped if it still arrives. Subprocesses are never killed.
"""
import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cloudctl.clock import AutoStopSchedule
from cloudctl.errors import AlreadyRunning

logger = logging.getLogger("cloudctl.scheduler")


class Kind(str, Enum):
    REFRESH = "refresh"
    ACTIVATE_PROFILE = "activate-profile"
    LOGIN = "login"
    RELOAD_PROFILES = "reload-profiles"
    AUTO_STOP = "auto-stop"
    START = "start"
    STOP = "stop"
    TERMINATE = "terminate"


RESOURCE_KINDS = (Kind.AUTO_STOP, Kind.START, Kind.STOP, Kind.TERMINATE)


@dataclass(frozen=True)
class OperationKey:
    kind: Kind
    resource_id: Optional[str] = None

    def __str__(self):
        if self.resource_id:
            return f"{self.kind.value}({self.resource_id})"
        return self.kind.value


REFRESH = OperationKey(Kind.REFRESH)
ACTIVATE_PROFILE = OperationKey(Kind.ACTIVATE_PROFILE)
LOGIN = OperationKey(Kind.LOGIN)
RELOAD_PROFILES = OperationKey(Kind.RELOAD_PROFILES)


def auto_stop(resource_id: str) -> OperationKey:
    return OperationKey(Kind.AUTO_STOP, resource_id)


def resource_action(kind: Kind, resource_id: str) -> OperationKey:
    if kind not in RESOURCE_KINDS:
        raise ValueError(f"Not a resource operation: {kind}")
    return OperationKey(kind, resource_id)


class Status(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CancelToken:
    """Checked by workers at their resumption points."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class Completion:
    """Event pushed by a worker when its unit finishes."""

    key: OperationKey
    generation: int
    result: Any = None
    error: Optional[BaseException] = None
    context: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Operation:
    """Handle returned by submit(). Its fields are only written on the main loop."""

    def __init__(self, key: OperationKey, generation: int, context: Any = None):
        self.key = key
        self.generation = generation
        self.context = context
        self.status = Status.RUNNING
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.token = CancelToken()
        self.thread: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker thread exits. Meant for tests and shutdown."""
        if self.thread is None:
            return True
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def __repr__(self):
        return f"Operation({self.key}, gen={self.generation}, status={self.status.value})"


class Scheduler:
    def __init__(self, events: Optional[queue.Queue] = None):
        self.events = events if events is not None else queue.Queue()
        self.auto_stop_schedule = AutoStopSchedule()
        self._operations: Dict[OperationKey, Operation] = {}
        self._generations: Dict[OperationKey, int] = defaultdict(int)

    # ---- inspection ----

    def get(self, key: OperationKey) -> Optional[Operation]:
        return self._operations.get(key)

    def status(self, key: OperationKey) -> Status:
        op = self._operations.get(key)
        return op.status if op else Status.IDLE

    def is_running(self, key: OperationKey) -> bool:
        return self.status(key) is Status.RUNNING

    def running(self) -> List[OperationKey]:
        return [k for k, op in self._operations.items() if op.status is Status.RUNNING]

    def generation(self, key: OperationKey) -> int:
        return self._generations[key]

    # ---- submission ----

    def _check_single_flight(self, key: OperationKey) -> None:
        if self.is_running(key):
            raise AlreadyRunning(key)

    def submit(self, key: OperationKey, work: Callable[[CancelToken], Any],
               context: Any = None) -> Operation:
        """
        Start `work` in the background unless an operation with `key` is already running.

        Args:
            key: operation key; single-flight is enforced per key
            work: callable taking the CancelToken; its return value or raised
                  exception becomes the completion outcome
            context: immutable tag echoed back on the completion (e.g. the
                     profile the work was submitted for)

        Returns:
            The new Operation, or the already running one for `key`.
        """
        try:
            self._check_single_flight(key)
        except AlreadyRunning:
            logger.debug(f"{key} already running, ignoring submit")
            return self._operations[key]

        self._generations[key] += 1
        op = Operation(key, self._generations[key], context)
        self._operations[key] = op

        op.thread = threading.Thread(
            target=self._run,
            args=(op.key, op.generation, op.context, op.token, work),
            name=f"cloudctl-{key}",
            daemon=True,
        )
        logger.debug(f"Submitted {key} (generation {op.generation})")
        op.thread.start()
        return op

    def _run(self, key, generation, context, token, work) -> None:
        # Worker thread: only produce a completion, never mutate scheduler state
        try:
            result = work(token)
        except Exception as e:
            completion = Completion(key, generation, error=e, context=context)
        else:
            completion = Completion(key, generation, result=result, context=context)
        self.events.put(completion)

    def cancel(self, key: OperationKey) -> bool:
        """
        Cancel a running operation cooperatively.

        The key becomes Idle and may be resubmitted right away; the cancelled
        unit keeps running until it notices (or finishes) and its result is dropped.
        """
        op = self._operations.get(key)
        if op is None or op.status is not Status.RUNNING:
            return False
        op.token.cancel()
        op.status = Status.IDLE
        logger.info(f"Cancelled {key} (generation {op.generation})")
        return True

    def shutdown(self) -> None:
        for key in self.running():
            self.cancel(key)

    # ---- main loop ----

    def drain(self) -> list:
        """
        Take every ready event off the queue.

        Completions are applied to the operation table and returned only when
        current; stale or cancelled ones are dropped. Other event types are
        passed through as-is.
        """
        delivered = []
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                break

            if not isinstance(event, Completion):
                delivered.append(event)
                continue

            op = self._operations.get(event.key)
            if op is None or event.generation != op.generation:
                logger.debug(f"Discarding stale result for {event.key} (generation {event.generation})")
                continue
            if op.cancelled:
                logger.debug(f"Discarding result of cancelled {event.key}")
                continue

            if event.ok:
                op.status = Status.SUCCEEDED
                op.result = event.result
            else:
                op.status = Status.FAILED
                op.error = event.error
            delivered.append(event)
        return delivered

    def check_auto_stop(self, now: datetime,
                        work_for: Callable[[str], Callable[[CancelToken], Any]],
                        context: Any = None) -> List[str]:
        """
        Fire every armed auto-stop whose deadline has passed.

        The entry is disarmed before the stop is submitted so an overlapping
        tick cannot submit a second stop for the same resource.

        Returns:
            Resource ids whose auto-stop was submitted on this tick.
        """
        fired = []
        for entry in self.auto_stop_schedule.due(now):
            entry.armed = False
            self.submit(auto_stop(entry.resource_id), work_for(entry.resource_id), context=context)
            fired.append(entry.resource_id)
        return fired
