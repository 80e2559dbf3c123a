"""Training job orchestration: one cancellable training run per bot.

State machine per bot (``idle`` is the empty job slot)::

    idle --start--> training --success--> completed --> idle
    training --cancel--> cancelling --(observed)--> cancelled --> idle
    training --failure--> failed --> idle

``start`` claims the bot's slot before its first await, snapshots the entries
in a worker thread, and returns while the model trains in another worker
thread. The job's completion handler is the only writer of terminal states.
A successful run is stored in the ModelStore first and only then becomes the
bot's active model, so a crash in between still leaves a loadable latest
version.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable

import config
from kb.entry_store import EntryStore
from kb.errors import AlreadyTrainingError, NotTrainingError, TrainingDisabledError
from kb.model_store import ModelStore
from kb.models import StoredModel
from kb.notifications import NotificationBus
from kb.retrieval import RetrievalModel
from kb.tenants import TenantContext, TenantRegistry
from runtime_state import record_training_run

log = logging.getLogger(__name__)


class JobState(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATES = frozenset({JobState.TRAINING, JobState.CANCELLING})
TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.TRAINING: frozenset({JobState.CANCELLING, JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}),
    JobState.CANCELLING: frozenset({JobState.CANCELLED, JobState.FAILED}),
}


class TrainingJob:
    """One training attempt. Created already claimed, i.e. in ``training``."""

    def __init__(self, bot_id: str):
        self.job_id = uuid.uuid4().hex
        self.bot_id = bot_id
        self.state = JobState.TRAINING
        self.cancel_event = threading.Event()
        self.cancel_reason: str | None = None
        self.started_at = datetime.now(UTC)
        self.finished_at: datetime | None = None
        self.corpus_size = 0
        self.error: str | None = None
        self.model_version: int | None = None
        self.task: asyncio.Task | None = None
        self._committing = False
        self._lock = threading.Lock()

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def _transition_locked(self, new_state: JobState) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"illegal training transition {self.state.value} -> {new_state.value}")
        previous = self.state
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = datetime.now(UTC)
        log.info(
            "training_transition bot=%s job=%s %s -> %s",
            self.bot_id, self.job_id, previous.value, new_state.value,
            extra={"bot_id": self.bot_id, "job_id": self.job_id, "from": previous.value, "to": new_state.value},
        )

    def transition(self, new_state: JobState) -> None:
        with self._lock:
            self._transition_locked(new_state)

    def request_cancel(self, reason: str) -> bool:
        """Set the cooperative cancel flag. False when too late or already requested."""
        with self._lock:
            if self.state is not JobState.TRAINING or self._committing:
                return False
            self.cancel_reason = reason
            self.cancel_event.set()
            self._transition_locked(JobState.CANCELLING)
            return True

    def begin_commit(self) -> bool:
        """Atomically decide to commit; refused once cancellation was requested."""
        with self._lock:
            if self.cancel_event.is_set() or self.state is not JobState.TRAINING:
                return False
            self._committing = True
            return True

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "job_id": self.job_id,
                "bot_id": self.bot_id,
                "state": self.state.value,
                "cancel_requested": self.cancel_event.is_set(),
                "cancel_reason": self.cancel_reason,
                "started_at": self.started_at.isoformat(),
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "corpus_size": self.corpus_size,
                "error": self.error,
                "model_version": self.model_version,
            }


class JobHandle:
    """Returned by :meth:`TrainingJobManager.start`; wraps the running task."""

    def __init__(self, job: TrainingJob):
        self.job = job

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def state(self) -> JobState:
        return self.job.state

    async def wait(self) -> JobState:
        if self.job.task is not None:
            await asyncio.shield(self.job.task)
        return self.job.state

    def snapshot(self) -> dict[str, Any]:
        return self.job.snapshot()


ModelFactory = Callable[[], Any]


class TrainingJobManager:

    def __init__(
        self,
        entry_store: EntryStore,
        model_store: ModelStore,
        tenants: TenantRegistry,
        *,
        notifications: NotificationBus | None = None,
        model_factory: ModelFactory = RetrievalModel,
        training_disabled: bool | None = None,
        max_training_seconds: float | None = None,
        run_recorder: Callable[[str, dict[str, Any]], None] | None = record_training_run,
    ):
        self._entry_store = entry_store
        self._model_store = model_store
        self._tenants = tenants
        self._notifications = notifications or NotificationBus()
        self._model_factory = model_factory
        self._training_disabled = training_disabled
        self._max_training_seconds = max_training_seconds
        self._run_recorder = run_recorder

    @property
    def training_disabled(self) -> bool:
        if self._training_disabled is not None:
            return self._training_disabled
        return config.DISABLE_TRAINING

    @property
    def max_training_seconds(self) -> float:
        if self._max_training_seconds is not None:
            return self._max_training_seconds
        return config.TRAINING_MAX_SECONDS

    # ── Operations ───────────────────────────────────────────────────────────

    async def start(self, bot_id: str) -> JobHandle:
        """Claim the bot's slot, snapshot its entries and launch training.

        The claim happens before the first await, so concurrent callers can
        never both see a free slot. Returns once the task is launched.
        """
        if self.training_disabled:
            raise TrainingDisabledError("Training disabled on this node")
        loop = asyncio.get_running_loop()

        context = self._tenants.get(bot_id)
        job = TrainingJob(bot_id)
        if not context.claim_job(job):
            raise AlreadyTrainingError(f"Bot '{bot_id}' is already training")
        log.info(
            "training_transition bot=%s job=%s idle -> training",
            bot_id, job.job_id,
            extra={"bot_id": bot_id, "job_id": job.job_id, "from": "idle", "to": "training"},
        )

        try:
            entries = await asyncio.to_thread(self._entry_store.fetch, bot_id)
            model = self._model_factory()
        except BaseException as exc:
            job.error = str(exc) or exc.__class__.__name__
            job.transition(JobState.FAILED)
            context.release_job(job)
            log.error("Could not start KB training for bot %s", bot_id, exc_info=True)
            raise

        job.corpus_size = len(entries)
        job.task = loop.create_task(self._run(context, job, model, entries), name=f"kb-train-{bot_id}")
        log.info("KB training started for bot %s (%d entries)", bot_id, len(entries))
        return JobHandle(job)

    def cancel(self, bot_id: str) -> dict[str, Any]:
        """Request cooperative cancellation; returns without waiting for the job."""
        if self.training_disabled:
            raise TrainingDisabledError("Training disabled on this node")
        job = self._tenants.get(bot_id).current_job
        if job is None or job.state not in ACTIVE_STATES:
            raise NotTrainingError(f"Bot '{bot_id}' is not training")
        if not job.request_cancel("user"):
            log.info("Cancel for bot %s ignored: job %s already %s", bot_id, job.job_id,
                     "finishing" if job.state is JobState.TRAINING else job.state.value)
        return job.snapshot()

    def status(self, bot_id: str) -> dict[str, Any]:
        context = self._tenants.get(bot_id)
        current = context.current_job
        last = context.last_job
        active = context.active_model
        return {
            "bot_id": bot_id,
            "state": current.state.value if current is not None else JobState.IDLE.value,
            "training": current is not None,
            "training_enabled": not self.training_disabled,
            "job": current.snapshot() if current is not None else None,
            "last_job": last.snapshot() if last is not None else None,
            "active_model_version": active.version if active is not None else None,
            "active_model": active.describe() if active is not None else None,
        }

    async def wait(self, bot_id: str) -> JobState | None:
        """Await the bot's running job, if any, and return its final state."""
        job = self._tenants.get(bot_id).current_job
        if job is None:
            return None
        return await JobHandle(job).wait()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Ask every running job to stop and wait for their completion handlers."""
        tasks = []
        for context in self._tenants.contexts():
            job = context.current_job
            if job is None:
                continue
            job.request_cancel("shutdown")
            if job.task is not None:
                tasks.append(job.task)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                log.warning("%d training job(s) still running at shutdown", len(pending))

    # ── Completion handling ──────────────────────────────────────────────────

    async def _run(self, context: TenantContext, job: TrainingJob, model: Any, entries: list) -> None:
        timeout_handle = self._schedule_timeout(job)
        try:
            try:
                trained = await asyncio.to_thread(model.train, entries, job.cancel_event)
            except Exception as exc:
                self._fail(job, exc, stage="train")
                return

            if not trained or not job.begin_commit():
                job.transition(JobState.CANCELLED)
                log.info("KB model training cancelled for bot %s (reason=%s)",
                         job.bot_id, job.cancel_reason or "model")
                return

            stored, interrupted = await self._store(job, model, len(entries))
            if stored is not None:
                context.set_active_model(stored)
                job.model_version = stored.version
                job.transition(JobState.COMPLETED)
                log.info("Success training KB model for bot %s (version %d)", job.bot_id, stored.version)
            if interrupted:
                raise asyncio.CancelledError()
        except asyncio.CancelledError:
            if job.state not in TERMINAL_STATES:
                job.cancel_event.set()
                job.cancel_reason = job.cancel_reason or "shutdown"
                job.transition(JobState.CANCELLED)
            raise
        finally:
            if timeout_handle is not None:
                timeout_handle.cancel()
            try:
                await asyncio.to_thread(self._record, job)
            finally:
                context.release_job(job)

    async def _store(self, job: TrainingJob, model: Any, entry_count: int) -> tuple[StoredModel | None, bool]:
        """Write the model in a worker thread; returns ``(stored, interrupted)``.

        A write that has started is never abandoned: if the task is cancelled
        meanwhile the write is still awaited, so the job ends in the state the
        store actually reached. A failed write fails the job and yields None.
        """
        write = asyncio.get_running_loop().run_in_executor(
            None, self._model_store.store_model, job.bot_id, model, entry_count
        )
        interrupted = False
        while True:
            try:
                return await asyncio.shield(write), interrupted
            except asyncio.CancelledError:
                interrupted = True
            except Exception as exc:
                self._fail(job, exc, stage="store")
                return None, interrupted

    def _fail(self, job: TrainingJob, exc: BaseException, *, stage: str) -> None:
        job.error = str(exc) or exc.__class__.__name__
        job.transition(JobState.FAILED)
        log.error("Could not train KB model for bot %s (stage=%s)", job.bot_id, stage,
                  exc_info=(type(exc), exc, exc.__traceback__))
        self._notifications.publish("training_failed", {
            "bot_id": job.bot_id,
            "job_id": job.job_id,
            "stage": stage,
            "message": f"KB training error: {job.error}",
        })

    def _schedule_timeout(self, job: TrainingJob) -> asyncio.TimerHandle | None:
        limit = self.max_training_seconds
        if not limit or limit <= 0:
            return None
        return asyncio.get_running_loop().call_later(limit, self._on_timeout, job, limit)

    def _on_timeout(self, job: TrainingJob, limit: float) -> None:
        if not job.request_cancel("timeout"):
            return
        log.warning("KB training for bot %s exceeded %.0fs; cancelling", job.bot_id, limit)
        self._notifications.publish("training_timeout", {
            "bot_id": job.bot_id,
            "job_id": job.job_id,
            "max_seconds": limit,
            "message": f"KB training exceeded {limit:.0f}s and was cancelled",
        })

    def _record(self, job: TrainingJob) -> None:
        if self._run_recorder is None:
            return
        try:
            self._run_recorder(job.bot_id, job.snapshot())
        except Exception:
            log.warning("Failed to record training run for bot %s", job.bot_id, exc_info=True)
