# gfy/infra/llm/thread_broker.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional
from collections import deque
from itertools import count

from PyQt6.QtCore import QObject, QThread, pyqtSignal, Qt

log = logging.getLogger("gfy.broker")

JobFunc = Callable[..., Any]

# job_finished statuses
OK, CANCELLED, FAILED = "ok", "cancelled", "error"


@dataclass(slots=True)
class Job:
    ticket:    int
    func:      JobFunc
    args:      tuple = field(default_factory=tuple)
    kwargs:    dict  = field(default_factory=dict)
    streaming: bool  = False

    def describe(self) -> str:
        name = getattr(self.func, "__qualname__", None) or type(self.func).__name__
        return f"#{self.ticket} {name}{' (stream)' if self.streaming else ''}"


class _Worker(QObject):
    """Runs one Job on the broker's worker thread and reports back through signals."""
    token    = pyqtSignal(int, object)  # (ticket, item) per item of a streaming job
    result   = pyqtSignal(int, object)  # (ticket, return value) of a plain job
    error    = pyqtSignal(int, object)  # (ticket, exception)
    finished = pyqtSignal(int, str)     # (ticket, OK | CANCELLED | FAILED)

    def __init__(self, job: Job):
        super().__init__()
        self.job = job
        self.stopping = False
        self._source: Any = None

    def stop(self):
        # Runs on the broker's thread; relies on the source's cancel() being thread-safe.
        self.stopping = True
        self._abort_source()

    def _abort_source(self):
        cancel = getattr(self._source, "cancel", None)
        if callable(cancel):
            cancel()

    def _drain(self, source) -> None:
        self._source = source
        if self.stopping:
            self._abort_source()
        for item in source:
            if self.stopping:
                return
            self.token.emit(self.job.ticket, item)

    def run(self):
        job = self.job
        status = OK
        try:
            value = job.func(*job.args, **job.kwargs)
            if job.streaming:
                self._drain(value)
            elif not self.stopping:
                self.result.emit(job.ticket, value)
        except Exception as exc:
            if not self.stopping:
                status = FAILED
                log.warning("Job %s failed: %s: %s", job.describe(), type(exc).__name__, exc)
                self.error.emit(job.ticket, exc)
            else:
                log.debug("Job %s raised after stop: %s", job.describe(), exc)
        finally:
            if self.stopping and status == OK:
                status = CANCELLED
            self._source = None
            self.finished.emit(job.ticket, status)


class ThreadBroker(QObject):
    """
    Runs backend calls one at a time on a worker QThread, in submission order.

    submit() jobs report a single job_result; submit_stream() jobs iterate the
    returned object and report job_token per item, and a cancel() method on
    that object is called to abort it. Whatever happens, each ticket that
    starts gets exactly one job_finished, after its other signals.
    """
    job_token     = pyqtSignal(int, object)  # (ticket, item)
    job_result    = pyqtSignal(int, object)  # (ticket, value)
    job_error     = pyqtSignal(int, object)  # (ticket, exception)
    job_finished  = pyqtSignal(int, str)     # (ticket, status)

    def __init__(self, parent: QObject | None = None):
        super().__init__(parent)
        self._tickets = count(1)
        self._pending: Deque[Job] = deque()
        self._thread: Optional[QThread] = None
        self._worker: Optional[_Worker] = None

    # -------- API --------
    def submit(self, func: JobFunc, *args, **kwargs) -> int:
        return self._enqueue(Job(next(self._tickets), func, args, kwargs))

    def submit_stream(self, func: JobFunc, *args, **kwargs) -> int:
        return self._enqueue(Job(next(self._tickets), func, args, kwargs, streaming=True))

    def stop_active(self):
        if self._worker:
            self._worker.stop()

    def cancel_ticket(self, ticket: int):
        """Stop `ticket` if it is running, otherwise drop it from the queue."""
        if ticket == self.active_ticket():
            self.stop_active()
            return
        self._pending = deque(j for j in self._pending if j.ticket != ticket)

    def clear_queue(self, include_active: bool = False):
        self._pending.clear()
        if include_active:
            self.stop_active()

    def active_ticket(self) -> int:
        return self._worker.job.ticket if self._worker else -1

    def is_idle(self) -> bool:
        return self._worker is None and not self._pending

    def shutdown(self, timeout_ms: int = 5000):
        """Drop queued jobs, stop the active one and wait for its thread."""
        self.clear_queue(include_active=True)
        if self._thread:
            self._thread.quit()
            if not self._thread.wait(timeout_ms):
                log.warning("Worker thread did not stop within %d ms", timeout_ms)

    # -------- internals --------
    def _enqueue(self, job: Job) -> int:
        self._pending.append(job)
        log.debug("Queued job %s", job.describe())
        self._launch()
        return job.ticket

    def _launch(self):
        if self._worker or not self._pending:
            return
        job = self._pending.popleft()
        thread, worker = QThread(), _Worker(job)
        worker.moveToThread(thread)

        queued = Qt.ConnectionType.QueuedConnection
        worker.token.connect(self.job_token, queued)
        worker.result.connect(self.job_result, queued)
        worker.error.connect(self.job_error, queued)
        worker.finished.connect(self._on_worker_finished, queued)
        thread.started.connect(worker.run)

        self._thread, self._worker = thread, worker
        thread.start()

    def _release(self):
        thread, worker = self._thread, self._worker
        self._thread = self._worker = None
        if thread:
            thread.quit()
            thread.wait()
            thread.deleteLater()
        if worker:
            worker.deleteLater()

    def _on_worker_finished(self, ticket: int, status: str):
        self.job_finished.emit(ticket, status)
        self._release()
        self._launch()
