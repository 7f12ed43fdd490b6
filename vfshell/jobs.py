#!/usr/bin/env python3
"""
Background jobs and cooperative cancellation.

A job is a pipeline started with '&'. It runs as an asyncio task on the
session's event loop and is tracked here until its task settles. Killing a
job only signals its CancellationToken; the running command notices at its
next await and stops.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import JobCancelledError, JobNotFoundError


logger = logging.getLogger(__name__)


class JobStatus(Enum):
    RUNNING = 'running'
    FINISHED = 'finished'
    FAILED = 'failed'
    KILLED = 'killed'


class CancellationToken:
    """Cooperative cancellation signal shared between a job and its owner."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled') -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelledError(self.reason or 'cancelled')

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for seconds, or raise JobCancelledError as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return
        raise JobCancelledError(self.reason or 'cancelled')


@dataclass
class Job:
    id: int
    command_text: str
    token: CancellationToken
    task: Optional['asyncio.Task'] = None
    status: JobStatus = JobStatus.RUNNING
    result: Any = None
    error: Optional[str] = None

    @property
    def notification(self) -> str:
        if self.status == JobStatus.FINISHED:
            return f"[Job {self.id} finished]"
        if self.status == JobStatus.KILLED:
            return f"[Job {self.id} killed]"
        return f"[Job {self.id} finished with error: {self.error or 'Unknown error'}]"


Runner = Callable[[CancellationToken], Awaitable[Any]]


class JobManager:
    """
    Tracks background jobs for one session.

    Job ids start at 1 and are never reused. Status lines for settled jobs
    are queued and handed to the host by drain_notifications().
    """

    def __init__(self, kill_timeout: float = 1.0):
        self._next_id = 1
        self.jobs: Dict[int, Job] = {}
        self.notifications: List[str] = []
        self.kill_timeout = kill_timeout

    def spawn(self, command_text: str, runner: Runner) -> int:
        """Start runner(token) as a task and return the new job id immediately."""
        job = Job(id=self._next_id, command_text=command_text, token=CancellationToken())
        self._next_id += 1
        self.jobs[job.id] = job
        job.task = asyncio.get_running_loop().create_task(self._supervise(job, runner))
        logger.info("Started job %d: %s", job.id, command_text)
        return job.id

    async def _supervise(self, job: Job, runner: Runner) -> None:
        try:
            result = await runner(job.token)
        except JobCancelledError:
            job.status = JobStatus.KILLED
        except asyncio.CancelledError:
            job.status = JobStatus.KILLED
            self._settle(job)
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
        else:
            job.result = result
            if job.token.cancelled:
                job.status = JobStatus.KILLED
            elif getattr(result, 'success', True):
                job.status = JobStatus.FINISHED
            else:
                job.status = JobStatus.FAILED
                job.error = getattr(result, 'error', None)
        self._settle(job)

    def _settle(self, job: Job) -> None:
        self.jobs.pop(job.id, None)
        message = job.notification
        self.notifications.append(message)
        if job.status == JobStatus.FAILED:
            logger.warning("Job %d failed: %s", job.id, job.error)
        else:
            logger.info("Job %d %s", job.id, job.status.value)

    def get(self, job_id: int) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"no such job: {job_id}")
        return job

    async def kill(self, job_id: int) -> Job:
        """
        Cancel a job and wait until it has settled.

        A job that ignores its token for longer than kill_timeout has its
        task cancelled outright.
        """
        job = self.get(job_id)
        job.token.cancel('killed')
        done, _ = await asyncio.wait({job.task}, timeout=self.kill_timeout)
        if not done:
            logger.warning("Job %d ignored cancellation; cancelling its task", job_id)
            job.task.cancel()
            await asyncio.wait({job.task})
        return job

    def active(self) -> List[Job]:
        return [self.jobs[i] for i in sorted(self.jobs)]

    async def wait_all(self) -> None:
        tasks = [job.task for job in self.jobs.values() if job.task is not None]
        if tasks:
            await asyncio.wait(tasks)

    def drain_notifications(self) -> List[str]:
        messages, self.notifications = self.notifications, []
        return messages
