import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..errors import StepFailed

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
SLEEPING = "sleeping"
COMPLETE = "complete"
FAILED = "failed"

STEP_DONE = "done"
STEP_FAILED = "failed"
STEP_SLEEPING = "sleeping"

Workflow = Callable[[Dict[str, Any], "Step"], Any]


def _dumps(value):
    return None if value is None else json.dumps(value)


def _loads(value):
    return None if value is None else json.loads(value)


@dataclass
class JobRecord:
    id: str
    workflow: str
    params: Dict[str, Any]
    status: str
    error: Optional[str]
    output: Any
    wake_at: float
    created_at: str
    updated_at: str


@dataclass
class StepRecord:
    job_id: str
    name: str
    status: str
    result: Any
    error: Optional[str]
    attempts: int
    wake_at: Optional[float]


class JobStore:
    """SQLite persistence for jobs and their step log."""

    def __init__(self, db_path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """One transaction on a fresh connection, closed afterwards."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    workflow TEXT NOT NULL,
                    params_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error_text TEXT,
                    output_json TEXT,
                    wake_at REAL NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_steps (
                    job_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result_json TEXT,
                    error_text TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    wake_at REAL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (job_id, name)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_status_wake ON jobs(status, wake_at)"
            )

    def create(self, job_id: str, workflow: str, params: Dict[str, Any], wake_at: float) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO jobs (id, workflow, params_json, status, wake_at) VALUES (?, ?, ?, ?, ?)",
                (job_id, workflow, json.dumps(params), QUEUED, wake_at),
            )

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return JobRecord(
            id=row["id"],
            workflow=row["workflow"],
            params=json.loads(row["params_json"]),
            status=row["status"],
            error=row["error_text"],
            output=_loads(row["output_json"]),
            wake_at=row["wake_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def due(self, now: float, limit: int = 20) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM jobs
                WHERE status IN (?, ?) AND wake_at <= ?
                ORDER BY wake_at
                LIMIT ?
                """,
                (QUEUED, SLEEPING, now, limit),
            ).fetchall()
        return [row["id"] for row in rows]

    def claim(self, job_id: str, now: float) -> bool:
        """Move a due job to RUNNING; False if someone else got it first."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET status = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status IN (?, ?) AND wake_at <= ?
                """,
                (RUNNING, job_id, QUEUED, SLEEPING, now),
            )
            return cur.rowcount == 1

    def finish(self, job_id: str, status: str, *, error=None, output=None, wake_at=None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE jobs SET
                    status = ?,
                    error_text = ?,
                    output_json = ?,
                    wake_at = COALESCE(?, wake_at),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (status, error, _dumps(output), wake_at, job_id),
            )

    def requeue_running(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE jobs SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE status = ?",
                (QUEUED, RUNNING),
            )
            return cur.rowcount

    def get_step(self, job_id: str, name: str) -> Optional[StepRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_steps WHERE job_id = ? AND name = ?", (job_id, name)
            ).fetchone()
        return self._to_step(row) if row is not None else None

    def steps(self, job_id: str) -> List[StepRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_steps WHERE job_id = ? ORDER BY rowid", (job_id,)
            ).fetchall()
        return [self._to_step(row) for row in rows]

    def save_step(self, job_id, name, status, *, result=None, error=None, attempts=0, wake_at=None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_steps (job_id, name, status, result_json, error_text, attempts, wake_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, name) DO UPDATE SET
                    status = excluded.status,
                    result_json = excluded.result_json,
                    error_text = excluded.error_text,
                    attempts = excluded.attempts,
                    wake_at = excluded.wake_at,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (job_id, name, status, _dumps(result), error, attempts, wake_at),
            )

    @staticmethod
    def _to_step(row) -> StepRecord:
        return StepRecord(
            job_id=row["job_id"],
            name=row["name"],
            status=row["status"],
            result=_loads(row["result_json"]),
            error=row["error_text"],
            attempts=row["attempts"],
            wake_at=row["wake_at"],
        )


class _Suspend(Exception):
    def __init__(self, wake_at: float):
        super().__init__(wake_at)
        self.wake_at = wake_at


class Step:
    """Handed to a workflow; records each step so a resumed job replays it."""

    def __init__(self, runner: "JobRunner", job_id: str):
        self._runner = runner
        self._store = runner.store
        self.job_id = job_id

    def do(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` once per job, retrying failures with backoff.

        A retry that has to wait suspends the job instead of blocking the
        worker; the job comes back when the delay is over and replays here.
        """
        record = self._store.get_step(self.job_id, name)
        if record is not None and record.status == STEP_DONE:
            logger.debug("[JOB %s] Reusing result of step '%s'", self.job_id, name)
            return record.result

        attempts = record.attempts if record is not None else 0
        retries = self._runner.retries
        while True:
            attempts += 1
            try:
                result = fn()
            except Exception as e:
                logger.warning(
                    "[JOB %s] Step '%s' attempt %d/%d failed: %s",
                    self.job_id, name, attempts, retries + 1, e,
                )
                if attempts > retries:
                    self._store.save_step(self.job_id, name, STEP_FAILED, error=str(e), attempts=attempts)
                    raise StepFailed(name, str(e)) from e
                delay = self._runner.retry_delay * self._runner.backoff ** (attempts - 1)
                if delay > 0:
                    wake_at = self._runner.clock() + delay
                    self._store.save_step(
                        self.job_id, name, STEP_FAILED, error=str(e), attempts=attempts, wake_at=wake_at
                    )
                    raise _Suspend(wake_at) from e
                self._store.save_step(self.job_id, name, STEP_FAILED, error=str(e), attempts=attempts)
                continue
            # Same shape on the first run and on replay
            result = _loads(_dumps(result))
            self._store.save_step(self.job_id, name, STEP_DONE, result=result, attempts=attempts)
            logger.info("[JOB %s] Step '%s' done", self.job_id, name)
            return result

    def sleep(self, name: str, seconds: float) -> None:
        """Suspend the job until ``seconds`` after this step was first reached."""
        record = self._store.get_step(self.job_id, name)
        if record is not None and record.status == STEP_DONE:
            return
        now = self._runner.clock()
        if record is None or record.wake_at is None:
            wake_at = now + seconds
            self._store.save_step(self.job_id, name, STEP_SLEEPING, wake_at=wake_at)
        else:
            wake_at = record.wake_at
        if wake_at <= now:
            self._store.save_step(self.job_id, name, STEP_DONE, wake_at=wake_at)
            return
        raise _Suspend(wake_at)


@dataclass
class JobHandle:
    id: str
    runner: "JobRunner"

    def status(self) -> Dict[str, Any]:
        return self.runner.status(self.id)


class JobRunner:
    """Runs registered workflows against the durable step log.

    A workflow is a callable ``(params, step)``. Steps run at least once;
    a step interrupted by a crash runs again when the job is recovered.
    """

    def __init__(
        self,
        store: JobStore,
        retries: int = 3,
        retry_delay: float = 10.0,
        backoff: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.retries = max(0, int(retries))
        self.retry_delay = retry_delay
        self.backoff = backoff
        self.clock = clock
        self._workflows: Dict[str, Workflow] = {}
        self._wakeup = threading.Event()

    def register(self, name: str, workflow: Workflow) -> None:
        self._workflows[name] = workflow

    def create(self, workflow: str, params: Dict[str, Any]) -> JobHandle:
        if workflow not in self._workflows:
            raise KeyError(f"Unknown workflow: {workflow}")
        job_id = str(uuid.uuid4())
        self.store.create(job_id, workflow, params, wake_at=self.clock())
        logger.info("[JOB %s] Queued %s workflow", job_id, workflow)
        self._wakeup.set()
        return JobHandle(id=job_id, runner=self)

    def status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.store.get(job_id)
        if job is None:
            return None
        return {
            "id": job.id,
            "workflow": job.workflow,
            "status": job.status,
            "error": job.error,
            "output": job.output,
            "steps": [
                {"name": s.name, "status": s.status, "attempts": s.attempts, "error": s.error}
                for s in self.store.steps(job_id)
            ],
        }

    def recover(self) -> int:
        """Requeue jobs left RUNNING by a previous process."""
        count = self.store.requeue_running()
        if count:
            logger.warning("Requeued %d interrupted job(s)", count)
        return count

    def run_due(self, limit: int = 20) -> int:
        ran = 0
        for job_id in self.store.due(self.clock(), limit):
            if self.run_job(job_id) is not None:
                ran += 1
        return ran

    def run_job(self, job_id: str) -> Optional[str]:
        if not self.store.claim(job_id, self.clock()):
            return None
        job = self.store.get(job_id)
        workflow = self._workflows.get(job.workflow)
        if workflow is None:
            logger.error("[JOB %s] FAILED: unknown workflow %s", job_id, job.workflow)
            self.store.finish(job_id, FAILED, error=f"Unknown workflow: {job.workflow}")
            return FAILED

        logger.info("[JOB %s] Running %s workflow", job_id, job.workflow)
        try:
            output = workflow(job.params, Step(self, job_id))
        except _Suspend as s:
            logger.info("[JOB %s] Sleeping until %s", job_id, time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(s.wake_at)))
            self.store.finish(job_id, SLEEPING, wake_at=s.wake_at)
            return SLEEPING
        except Exception as e:
            logger.error("[JOB %s] FAILED: %s", job_id, e, exc_info=not isinstance(e, StepFailed))
            self.store.finish(job_id, FAILED, error=str(e))
            return FAILED

        self.store.finish(job_id, COMPLETE, output=output)
        logger.info("[JOB %s] COMPLETED", job_id)
        return COMPLETE

    def wait_for_work(self, timeout: float) -> None:
        self._wakeup.wait(timeout)
        self._wakeup.clear()

    def notify(self) -> None:
        self._wakeup.set()


class JobWorker(threading.Thread):
    """Polls the runner for due jobs until stopped.

    Run a single worker per database: recovery requeues every RUNNING job,
    including ones another live worker holds.
    """

    def __init__(self, runner: JobRunner, poll_interval: float = 5.0):
        super().__init__(name="sendto-job-worker", daemon=True)
        self._runner = runner
        self._poll_interval = poll_interval
        self._stopping = threading.Event()

    def run(self):
        self._runner.recover()
        logger.info("Job worker started (poll every %ss)", self._poll_interval)
        while not self._stopping.is_set():
            try:
                self._runner.run_due()
            except Exception:
                logger.exception("Job worker iteration failed")
            self._runner.wait_for_work(self._poll_interval)
        logger.info("Job worker stopped")

    def stop(self):
        self._stopping.set()
        self._runner.notify()
