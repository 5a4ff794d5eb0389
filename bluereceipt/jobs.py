import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Optional

from bluereceipt.printer import PaperOutError, PrintJobError

logger = logging.getLogger(__name__)

JOB_DELAY = 0.5  # seconds between jobs, so the printer's buffer can drain


class JobKind(enum.Enum):
    Text = "text"
    Receipt = "receipt"


@dataclass
class PrintJob:
    """One print request. run() does all the work and returns a truthy result."""

    kind: JobKind
    run: Callable[[], Awaitable[Any]]
    label: str = ""
    enqueued_at: datetime = field(default_factory=datetime.now)
    future: Optional[asyncio.Future] = None

    def __str__(self):
        return f"{self.kind.value} {self.label!r}" if self.label else self.kind.value


class PrintQueue:
    """Runs print jobs one at a time, in the order they were added.

    A single consumer task drains the queue. Adding a job while it runs only
    appends. When a job fails because the printer is out of paper, the
    consumer stops and leaves the remaining jobs queued until the next
    enqueue() or resume().
    """

    def __init__(self, job_delay: float = JOB_DELAY):
        self.job_delay = job_delay
        self.halted = False
        self._jobs: Deque[PrintJob] = deque()
        self._draining = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._jobs)

    @property
    def draining(self) -> bool:
        return self._draining

    def enqueue(self, job: PrintJob) -> asyncio.Future:
        """Queue a job. The returned future settles when the job has run."""
        job.future = asyncio.get_running_loop().create_future()
        self._jobs.append(job)
        logger.info("Job %s added to queue. Current queue length: %d", job, len(self._jobs))
        self.resume()
        return job.future

    def resume(self):
        """Start the consumer if it is idle and there is work."""
        if self._draining:
            logger.debug("Queue is already being processed")
            return
        if not self._jobs:
            return
        self.halted = False
        self._draining = True
        self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self):
        logger.info("Starting to process queue. Jobs in queue: %d", len(self._jobs))
        try:
            while self._jobs:
                job = self._jobs[0]
                logger.info(
                    "Processing job %s from %s. Remaining jobs: %d",
                    job,
                    job.enqueued_at.isoformat(),
                    len(self._jobs),
                )
                halt = False
                try:
                    result = await job.run()
                    if not result:
                        raise PrintJobError("Print job failed")
                except PaperOutError as e:
                    logger.error("Job %s failed: %s", job, e)
                    _reject(job, e)
                    halt = True
                except Exception as e:
                    logger.error("Job %s failed: %s", job, e)
                    _reject(job, e)
                else:
                    logger.info("Job %s completed successfully", job)
                    _resolve(job, result)

                self._jobs.popleft()
                if halt:
                    self.halted = True
                    logger.warning(
                        "Stopping queue processing due to printer error. %d jobs waiting",
                        len(self._jobs),
                    )
                    break
                logger.debug("Job removed from queue. Remaining jobs: %d", len(self._jobs))
                await asyncio.sleep(self.job_delay)
        finally:
            self._draining = False
            logger.info("Queue processing completed")

    async def close(self):
        """Stop the consumer and cancel every job still waiting."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        while self._jobs:
            job = self._jobs.popleft()
            if job.future is not None and not job.future.done():
                job.future.cancel()


def _resolve(job: PrintJob, result):
    if job.future is not None and not job.future.done():
        job.future.set_result(result)


def _reject(job: PrintJob, error: BaseException):
    if job.future is not None and not job.future.done():
        job.future.set_exception(error)
