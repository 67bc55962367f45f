"""Fixed-size thread pool running transcription tasks."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from .report import TaskOutcome
from .state import TaskState

logger = logging.getLogger(__name__)

THREAD_NAME_PREFIX = "asr-worker"


@dataclass(frozen=True)
class TranscriptionTask:
    """One audio file to transcribe and where to write its transcript."""

    input_path: Path
    output_path: Path


class ProgressCounter:
    """Thread-safe counter handing out progress numbers 1, 2, 3, ..."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def claim(self) -> int:
        """Atomically increment the counter and return the new value."""
        with self._lock:
            self._value += 1
            return self._value


class WorkerPool:
    """Runs a handler over submitted tasks on a fixed number of threads.

    Usage::

        with WorkerPool(4, handler, total=len(tasks)) as pool:
            for task in tasks:
                pool.enqueue(task)
        outcomes = pool.outcomes

    Leaving the ``with`` block waits until every enqueued task has finished.
    Every task yields exactly one outcome. A task that raises is recorded as
    failed; it never stops other tasks.
    """

    def __init__(
        self,
        num_workers: int,
        handler: Callable[[TranscriptionTask], Any],
        total: Optional[int] = None,
    ):
        """Initialize the pool.

        Args:
            num_workers: Number of worker threads (at least 1).
            handler: Called with each task on a worker thread.
            total: Expected task count, used only in progress messages.
        """
        if num_workers < 1:
            raise ValueError(f"num_workers must be at least 1, got {num_workers}")

        self.num_workers = num_workers
        self.handler = handler
        self.total = total
        self.progress = ProgressCounter()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Tuple[TranscriptionTask, Future]] = []
        self._outcomes: List[TaskOutcome] = []
        self._closed = False

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        """Create the executor backing the pool."""
        if self._executor is not None:
            logger.warning("Worker pool already started")
            return

        logger.info(f"Creating thread pool with {self.num_workers} threads.")
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_workers, thread_name_prefix=THREAD_NAME_PREFIX
        )

    def enqueue(self, task: TranscriptionTask) -> None:
        """Submit a task. Never blocks.

        Raises:
            RuntimeError: If the pool isn't started or has been closed.
        """
        if self._closed:
            raise RuntimeError("Cannot enqueue on a closed worker pool")
        if self._executor is None:
            raise RuntimeError("Worker pool has not been started")

        logger.info(f"Enqueue input file={task.input_path} to thread pool.")
        logger.debug(f"Task {task.input_path}: {TaskState.QUEUED.value}")
        self._futures.append((task, self._executor.submit(self._run_task, task)))

    def close(self) -> List[TaskOutcome]:
        """Wait for every submitted task to finish and stop the workers.

        Returns:
            Outcomes of all tasks, in submission order.
        """
        if not self._closed:
            self._closed = True
            if self._executor is not None:
                self._executor.shutdown(wait=True)
            self._outcomes = [
                self._collect(task, future) for task, future in self._futures
            ]
            self._futures = []

        return list(self._outcomes)

    @property
    def outcomes(self) -> List[TaskOutcome]:
        return list(self._outcomes)

    def _collect(self, task: TranscriptionTask, future: Future) -> TaskOutcome:
        """Turn a finished future into an outcome."""
        error = future.exception()
        if error is None:
            return future.result()

        # _run_task itself raised outside the handler boundary
        logger.error(f"Task for {task.input_path} did not run: {error!r}")
        return TaskOutcome(
            number=self.progress.claim(),
            input_path=task.input_path,
            output_path=task.output_path,
            state=TaskState.FAILED,
            error=str(error) or type(error).__name__,
        )

    def _run_task(self, task: TranscriptionTask) -> TaskOutcome:
        """Run the handler on one task, capturing any failure."""
        number = self.progress.claim()
        total = self.total if self.total is not None else len(self._futures)
        logger.info(
            f"processing {number}/{total} input={task.input_path} "
            f"output={task.output_path}"
        )
        logger.debug(f"Task {task.input_path}: {TaskState.RUNNING.value}")

        start = time.perf_counter()
        try:
            self.handler(task)
        except Exception as e:
            logger.exception(f"Failed to process {task.input_path}")
            return self._failed(task, number, str(e) or type(e).__name__, start)
        except BaseException as e:
            # SystemExit and friends can't end the run from a worker thread
            logger.error(
                f"Processing {task.input_path} was aborted by {type(e).__name__}"
            )
            return self._failed(task, number, f"aborted by {e!r}", start)

        elapsed = time.perf_counter() - start
        logger.debug(
            f"Task {task.input_path}: {TaskState.COMPLETED.value} in {elapsed:.2f}s"
        )
        return TaskOutcome(
            number=number,
            input_path=task.input_path,
            output_path=task.output_path,
            state=TaskState.COMPLETED,
            elapsed_s=elapsed,
        )

    def _failed(
        self, task: TranscriptionTask, number: int, error: str, start: float
    ) -> TaskOutcome:
        logger.debug(f"Task {task.input_path}: {TaskState.FAILED.value}")
        return TaskOutcome(
            number=number,
            input_path=task.input_path,
            output_path=task.output_path,
            state=TaskState.FAILED,
            error=error,
            elapsed_s=time.perf_counter() - start,
        )
