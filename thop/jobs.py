import time
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from thop.config import JOB_POLL_INTERVAL, KILLED_EXIT_CODE
from thop.errors import ErrorCode, ThopError
from thop.utils import Logger

JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass
class BackgroundJob:
    id: int
    command: str
    session: str
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    status: str = JOB_RUNNING
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""

    @property
    def duration(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "session": self.session,
            "start_time": self.start_time.isoformat(timespec="milliseconds"),
            "end_time": self.end_time.isoformat(timespec="milliseconds") if self.end_time else None,
            "status": self.status,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


class RWLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def reading(self) -> "_Guard":
        return _Guard(self.acquire_read, self.release_read)

    def writing(self) -> "_Guard":
        return _Guard(self.acquire_write, self.release_write)


class _Guard:
    def __init__(self, acquire: Callable[[], None], release: Callable[[], None]):
        self._acquire = acquire
        self._release = release

    def __enter__(self):
        self._acquire()
        return self

    def __exit__(self, *exc_info):
        self._release()
        return False


def job_not_found(job_id: int) -> ThopError:
    return ThopError(ErrorCode.JOB_NOT_FOUND, f"Job {job_id} not found", suggestion="Use /jobs to list background jobs")


def job_not_running(job_id: int, status: str) -> ThopError:
    return ThopError(ErrorCode.JOB_NOT_RUNNING, f"Job {job_id} is not running (status: {status})")


def job_vanished(job_id: int) -> ThopError:
    return ThopError(ErrorCode.JOB_VANISHED, f"Job {job_id} was removed while waiting")


class JobRegistry:
    """Runs commands on worker threads, each against its own freshly built session manager."""

    def __init__(self, manager_factory: Callable[[], Any], logger: Optional[Logger] = None,
                 poll_interval: float = JOB_POLL_INTERVAL):
        self.manager_factory = manager_factory
        self.logger = logger or Logger.quiet()
        self.poll_interval = poll_interval
        self.jobs: Dict[int, BackgroundJob] = {}
        self.rwlock = RWLock()
        self.id_lock = threading.Lock()
        self.next_id = 1
        self.threads: Dict[int, threading.Thread] = {}

    def _allocate_id(self) -> int:
        with self.id_lock:
            job_id = self.next_id
            self.next_id += 1
            return job_id

    def submit(self, command: str, session_name: str) -> int:
        job_id = self._allocate_id()
        job = BackgroundJob(id=job_id, command=command, session=session_name)
        with self.rwlock.writing():
            self.jobs[job_id] = job

        thread = threading.Thread(target=self._worker, args=(job_id, command, session_name), daemon=True)
        self.threads[job_id] = thread
        thread.start()
        self.logger.info(f"started background job {job_id} on '{session_name}': {command}")
        return job_id

    def _worker(self, job_id: int, command: str, session_name: str) -> None:
        stdout, stderr, exit_code, status = "", "", 0, JOB_COMPLETED
        manager = None
        try:
            manager = self.manager_factory()
            session = manager.get_session(session_name)
            if session is not None and not session.is_connected():
                manager.connect(session_name)
            result = manager.execute_on(session_name, command)
            stdout, stderr, exit_code = result.stdout, result.stderr, result.exit_code
        except Exception as exc:
            stderr, exit_code, status = str(exc), 1, JOB_FAILED
        finally:
            if manager is not None:
                manager.close_all()

        with self.rwlock.writing():
            job = self.jobs.get(job_id)
            if job is not None and job.status == JOB_RUNNING:
                job.stdout = stdout
                job.stderr = stderr
                job.exit_code = exit_code
                job.status = status
                job.end_time = datetime.now()
        self.threads.pop(job_id, None)
        self.logger.info(f"background job {job_id} {status} (exit {exit_code})")

    def get(self, job_id: int) -> Optional[BackgroundJob]:
        with self.rwlock.reading():
            job = self.jobs.get(job_id)
            return replace(job) if job is not None else None

    def list(self) -> List[BackgroundJob]:
        with self.rwlock.reading():
            return [replace(self.jobs[job_id]) for job_id in sorted(self.jobs)]

    def wait(self, job_id: int) -> BackgroundJob:
        if self.get(job_id) is None:
            raise job_not_found(job_id)
        while True:
            with self.rwlock.writing():
                job = self.jobs.get(job_id)
                if job is None:
                    raise job_vanished(job_id)
                if job.status != JOB_RUNNING:
                    return self.jobs.pop(job_id)
            time.sleep(self.poll_interval)

    def kill(self, job_id: int) -> BackgroundJob:
        # Only the bookkeeping changes; the worker thread runs to completion.
        with self.rwlock.writing():
            job = self.jobs.get(job_id)
            if job is None:
                raise job_not_found(job_id)
            if job.status != JOB_RUNNING:
                raise job_not_running(job_id, job.status)
            job.status = JOB_FAILED
            job.exit_code = KILLED_EXIT_CODE
            job.stderr = "killed by user"
            job.end_time = datetime.now()
            del self.jobs[job_id]
        self.logger.info(f"background job {job_id} killed")
        return job
