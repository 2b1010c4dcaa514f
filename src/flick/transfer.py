"""Transfer queue manager with bounded concurrency, progress events and cancellation."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from pathlib import Path

from flick.backend import CancelToken, transfer_error_from_oserror
from flick.connection import Connection
from flick.errors import TransferCancelled, TransferError, TransferErrorKind
from flick.models import (
    EngineSettings,
    ProgressEvent,
    TransferDirection,
    TransferQueue,
    TransferStatus,
    TransferTask,
)

logger = logging.getLogger(__name__)


class TransferManager:
    """Runs queued transfers against their connections.

    Tasks start in FIFO order as long as the global limit and the limit of
    the task's connection allow it. A connection whose backend cannot open
    concurrent channels never runs more than one task at a time.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        on_progress: Callable[[TransferTask], None] | None = None,
        on_status_change: Callable[[TransferTask], None] | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.on_progress = on_progress
        self.on_status_change = on_status_change

        self.queue = TransferQueue(max_concurrent=max(1, self.settings.max_concurrent_transfers))

        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._aborts: dict[str, asyncio.TimerHandle] = {}
        self._speed_trackers: dict[str, SpeedTracker] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._removing: set[str] = set()

    def enqueue(
        self,
        connection: Connection,
        direction: TransferDirection,
        local_path: str,
        remote_path: str,
    ) -> str:
        """Add a transfer to the queue and return its task id."""
        total = None
        if direction == TransferDirection.UPLOAD:
            try:
                total = Path(local_path).expanduser().stat().st_size
            except OSError:
                total = None  # reported as SOURCE_NOT_FOUND when the task runs

        task = TransferTask(
            id=str(uuid.uuid4()),
            direction=direction,
            local_path=local_path,
            remote_path=remote_path,
            connection=connection,
            total_bytes=total,
        )
        self.queue.tasks.append(task)
        self._finished[task.id] = asyncio.Event()
        self._notify_status_change(task)
        logger.info("Added %s to queue: %s", direction.value, remote_path)
        self._dispatch()
        return task.id

    def start(self) -> None:
        """Start any queued tasks the limits allow; needs a running event loop."""
        self._dispatch()

    def _connection_limit(self, connection: Connection | None) -> int:
        if connection is not None and connection.supports_concurrent_channels:
            return max(1, self.settings.max_channels_per_connection)
        return 1

    def _can_run(self, task: TransferTask) -> bool:
        return self.queue.running_on(task.connection) < self._connection_limit(task.connection)

    def _dispatch(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Nothing can run yet; start() picks the queue up later
            return
        while self.queue.can_start_more:
            task = self.queue.get_next_queued(self._can_run)
            if task is None:
                break
            self._start_transfer(task)

    def _start_transfer(self, task: TransferTask) -> None:
        """Start a single transfer."""
        logger.debug("Starting transfer: %s", task.remote_path)
        task.status = TransferStatus.RUNNING
        task.started_at = datetime.now()
        token = CancelToken()
        self._tokens[task.id] = token
        self._speed_trackers[task.id] = SpeedTracker()
        self._notify_status_change(task)
        self._tasks[task.id] = asyncio.create_task(self._run(task, token))

    async def _run(self, task: TransferTask, token: CancelToken) -> None:
        """Execute one transfer and record how it ended."""

        def progress_callback(bytes_done: int, total: int | None) -> None:
            if task.status.is_terminal:
                return
            if total is not None:
                task.total_bytes = total
            if not task.advance(bytes_done):
                return
            speed_tracker = self._speed_trackers.get(task.id)
            if speed_tracker:
                task.speed = speed_tracker.update(bytes_done)
            self._notify_progress(task)

        try:
            connection = task.connection
            if connection is None or connection.closed:
                raise TransferError(TransferErrorKind.CONNECTION_LOST, "Connection is closed")

            if task.direction == TransferDirection.DOWNLOAD:
                await connection.backend.download(
                    task.remote_path, task.local_path, progress_callback, token
                )
            else:
                await connection.backend.upload(
                    task.local_path, task.remote_path, progress_callback, token
                )

            if task.total_bytes is None:
                task.total_bytes = task.bytes_transferred
            task.status = TransferStatus.SUCCEEDED
            logger.info("%s completed: %s", task.direction.value.capitalize(), task.remote_path)

        except TransferCancelled as e:
            task.status = TransferStatus.CANCELLED
            task.error = e
            logger.info("Transfer cancelled: %s", task.remote_path)
        except asyncio.CancelledError:
            # Forced abort after the grace period, or stop()
            task.status = TransferStatus.CANCELLED
            task.error = TransferCancelled()
            logger.info("Transfer aborted: %s", task.remote_path)
        except TransferError as e:
            task.status = TransferStatus.FAILED
            task.error = e
            logger.error("Transfer failed: %s - %s", task.remote_path, e)
        except OSError as e:
            task.status = TransferStatus.FAILED
            task.error = transfer_error_from_oserror(e)
            logger.error("Transfer failed: %s - %s", task.remote_path, e)
        except Exception as e:
            task.status = TransferStatus.FAILED
            task.error = TransferError(TransferErrorKind.IO_ERROR, str(e) or type(e).__name__)
            logger.exception("Transfer failed: %s", task.remote_path)
        finally:
            if not task.status.is_terminal:
                # KeyboardInterrupt or SystemExit is propagating
                task.status = TransferStatus.FAILED
                task.error = TransferError(TransferErrorKind.IO_ERROR, "Unexpected error")
            handle = self._aborts.pop(task.id, None)
            if handle:
                handle.cancel()
            self._tasks.pop(task.id, None)
            self._tokens.pop(task.id, None)
            self._speed_trackers.pop(task.id, None)
            self._finish(task)
            if task.id in self._removing:
                self._removing.discard(task.id)
                self._forget(task.id)
            self._dispatch()

    def _finish(self, task: TransferTask) -> None:
        """Publish the terminal state of a task exactly once."""
        task.completed_at = datetime.now()
        task.speed = 0.0
        self._notify_status_change(task)
        done = self._finished.get(task.id)
        if done:
            done.set()
        self._subscribers.pop(task.id, None)

    def cancel(self, task_id: str) -> bool:
        """Cancel a queued or running transfer.

        A queued task becomes Cancelled immediately. A running task is asked to
        stop at its next progress point and is aborted outright if it has not
        finished after the grace period. Partially written files stay in place.
        """
        task = self.queue.get_by_id(task_id)
        if task is None or task.status.is_terminal:
            return False

        if task.status == TransferStatus.QUEUED:
            task.status = TransferStatus.CANCELLED
            task.error = TransferCancelled()
            logger.info("Cancelled queued transfer: %s", task.remote_path)
            self._finish(task)
            return True

        token = self._tokens.get(task_id)
        if token:
            token.cancel()
        if task_id not in self._aborts:
            loop = asyncio.get_running_loop()
            self._aborts[task_id] = loop.call_later(
                self.settings.cancel_grace, self._force_abort, task_id
            )
        return True

    def _force_abort(self, task_id: str) -> None:
        self._aborts.pop(task_id, None)
        worker = self._tasks.get(task_id)
        if worker and not worker.done():
            logger.debug("Transfer %s ignored cancellation, aborting", task_id)
            worker.cancel()

    async def subscribe(self, task_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield progress events for a task, ending with its terminal event.

        Subscribing to a finished task yields only the final event.
        """
        task = self.queue.get_by_id(task_id)
        if task is None:
            raise KeyError(f"Unknown transfer: {task_id}")
        if task.status.is_terminal:
            yield task.to_event()
            return

        events: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        events.put_nowait(task.to_event())
        self._subscribers.setdefault(task_id, []).append(events)
        try:
            while True:
                event = await events.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(task_id)
            if subscribers and events in subscribers:
                subscribers.remove(events)

    async def wait(self, task_id: str) -> TransferTask:
        """Wait for a task to reach a terminal state."""
        task = self.queue.get_by_id(task_id)
        if task is None:
            raise KeyError(f"Unknown transfer: {task_id}")
        self._dispatch()
        await self._finished[task_id].wait()
        return task

    async def join(self) -> None:
        """Wait until no task is queued or running."""
        self._dispatch()
        while True:
            pending = [t for t in self.queue.tasks if not t.status.is_terminal]
            if not pending:
                return
            await self._finished[pending[0].id].wait()

    async def stop(self) -> None:
        """Cancel every queued and running transfer and wait for workers to end."""
        for task in list(self.queue.tasks):
            if task.status == TransferStatus.QUEUED:
                self.cancel(task.id)
        workers = list(self._tasks.values())
        for token in self._tokens.values():
            token.cancel()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def requeue(self, task_id: str) -> str | None:
        """Queue a fresh copy of a failed or cancelled task; returns the new id."""
        task = self.queue.get_by_id(task_id)
        if task is None or task.status not in (TransferStatus.FAILED, TransferStatus.CANCELLED):
            return None
        return self.enqueue(task.connection, task.direction, task.local_path, task.remote_path)

    def remove(self, task_id: str) -> bool:
        """Remove a task from the queue, cancelling it first if needed.

        A running task keeps counting against the limits until its worker has
        ended, and only then leaves the queue.
        """
        task = self.queue.get_by_id(task_id)
        if task is None:
            return False
        if task.status == TransferStatus.RUNNING:
            self._removing.add(task_id)
            self.cancel(task_id)
            return True
        if task.status == TransferStatus.QUEUED:
            self.cancel(task_id)
        return self._forget(task_id)

    def _forget(self, task_id: str) -> bool:
        self._finished.pop(task_id, None)
        return self.queue.remove(task_id)

    def clear_finished(self) -> int:
        """Forget all terminal tasks. Returns how many were removed."""
        finished = self.queue.clear_finished()
        for task in finished:
            self._finished.pop(task.id, None)
        return len(finished)

    def move_up(self, task_id: str) -> bool:
        task = self.queue.get_by_id(task_id)
        return bool(task and task.status == TransferStatus.QUEUED and self.queue.move_up(task_id))

    def move_down(self, task_id: str) -> bool:
        task = self.queue.get_by_id(task_id)
        return bool(
            task and task.status == TransferStatus.QUEUED and self.queue.move_down(task_id)
        )

    def get(self, task_id: str) -> TransferTask | None:
        return self.queue.get_by_id(task_id)

    def snapshot(self) -> list[ProgressEvent]:
        """Current state of every task, in queue order."""
        return [t.to_event() for t in self.queue.tasks]

    def _publish(self, task: TransferTask) -> None:
        event = task.to_event()
        for events in self._subscribers.get(task.id, []):
            events.put_nowait(event)

    def _notify_progress(self, task: TransferTask) -> None:
        """Notify progress callback and subscribers."""
        self._publish(task)
        if self.on_progress:
            self.on_progress(task)

    def _notify_status_change(self, task: TransferTask) -> None:
        """Notify status change callback and subscribers."""
        self._publish(task)
        if self.on_status_change:
            self.on_status_change(task)

    @property
    def total_speed(self) -> float:
        """Total speed across all running transfers."""
        return sum(t.speed for t in self.queue.tasks if t.status == TransferStatus.RUNNING)


class SpeedTracker:
    """Tracks transfer speed over a short sliding window."""

    def __init__(self, window: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._samples: list[tuple[float, int]] = []
        self._last_bytes = 0

    def update(self, current_bytes: int) -> float:
        """Update with current bytes transferred, return speed in bytes per second."""
        now = self._clock()
        bytes_delta = current_bytes - self._last_bytes
        self._last_bytes = current_bytes

        self._samples.append((now, bytes_delta))

        # Keep only recent samples
        cutoff = now - self.window
        self._samples = [(t, b) for t, b in self._samples if t > cutoff]

        if len(self._samples) < 2:
            return 0.0

        time_span = self._samples[-1][0] - self._samples[0][0]
        if time_span <= 0:
            return 0.0

        total_bytes = sum(b for _, b in self._samples[1:])
        return total_bytes / time_span
