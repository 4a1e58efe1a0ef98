"""Staged Migration Runner.

Drives one migration session through its stages strictly in order:

    PENDING -> APPLYING -> VALIDATING -> VALIDATED
                  |            |
                  +--> FAILED <+--> APPLYING (while retries remain)
                         |
                         +--> PERMANENTLY_FAILED

A failed attempt rolls back only the files the stage touched. When the
retry budget is exhausted a non-critical stage may be left rolled back
while the session continues; otherwise the session aborts and every file
touched by the session is restored. State is persisted to the manifest
after every transition so an interrupted or cancelled session can be
resumed with the same session id.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..config import MigrationConfig
from ..context import SessionContext
from ..errors import ConfigurationError, MigrationCancelled, RestoreError, StageloomError, ValidationError, WriteError
from ..safety import FileSafetyManager
from .manifest import ManifestStore
from .models import (
    AbortReport,
    Boundary,
    MigrationResult,
    MigrationSession,
    MigrationSummary,
    Patch,
    SessionStatus,
    Stage,
    StageResult,
    StageStatus,
    now_iso,
)
from .producer import PatchProducer, ResilientPatchProducer, TemplatePatchProducer
from .stages import plan_stages
from .validation import StageValidator

logger = logging.getLogger(__name__)

ABORT_CANCELLED = "cancelled"

DECISION_CONTINUE = "continue"
DECISION_SKIP = "skip"
DECISION_ABORT = "abort"


@dataclass
class _RunState:
    """Collaborators bound to one session for the duration of a run."""
    session: MigrationSession
    ctx: SessionContext
    safety: FileSafetyManager
    producer: ResilientPatchProducer
    validator: StageValidator
    store: ManifestStore


class StagedMigrationRunner:
    """Apply producer patches stage by stage with validation and rollback.

    Args:
        project_root: Root of the project being migrated
        config: Validated MigrationConfig (defaults when None)
        producer: Primary patch producer; when None every file goes through
            the template fallback
        fallback: Deterministic producer used when the primary fails
        validator: Build/test validator (built from config when None)
        store: Manifest store (``<root>/<state_dir>/manifest.db`` when None)
        context: SessionContext to use; its session id becomes the session id
    """

    def __init__(
        self,
        project_root: str,
        config: Optional[MigrationConfig] = None,
        producer: Optional[PatchProducer] = None,
        fallback: Optional[PatchProducer] = None,
        validator: Optional[StageValidator] = None,
        store: Optional[ManifestStore] = None,
        context: Optional[SessionContext] = None,
    ):
        self.project_root = os.path.abspath(project_root)
        self.config = config or MigrationConfig()
        self.producer = producer
        self.fallback = fallback or TemplatePatchProducer(self.project_root)
        self._validator = validator
        self._store = store
        self._context = context
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Honoured between stages and during validation."""
        self._cancel.set()
        logger.warning("Cancellation requested")

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    # ── Entry point ────────────────────────────────────────────────────

    def run(
        self,
        boundaries: Sequence[Boundary],
        session_id: Optional[str] = None,
        resume_from: Optional[str] = None,
        skip_stages: Iterable[str] = (),
    ) -> MigrationResult:
        """Run (or resume) a staged migration session.

        Args:
            boundaries: Boundaries to migrate; ignored when resuming an
                existing session, whose stage layout comes from the manifest
            session_id: Existing session to resume, or id for a new one
            resume_from: Stage id (or boundary id) to start from; earlier
                stages that are not VALIDATED are treated as skipped
            skip_stages: Stage or boundary ids not to process

        Raises:
            ConfigurationError: Unknown resume point, or a session that was
                rolled back and cannot be resumed
            RestoreError: A rollback could not be completed (fatal)
        """
        start = time.monotonic()
        ctx = self._open_context(session_id)
        owns_store = self._store is None
        store = self._store or ManifestStore.for_project(self.project_root, self.config.state_dir)
        # Entries reach the manifest before the live file is written
        safety = FileSafetyManager(
            self.project_root, ctx.session_id, self.config.state_dir, ctx,
            on_entry=lambda entry: store.save_backup_entries(ctx.session_id, [entry]),
        )

        try:
            session = self._load_or_create(store, safety, ctx, boundaries)
            state = _RunState(
                session=session,
                ctx=ctx,
                safety=safety,
                producer=ResilientPatchProducer(self.producer, self.fallback, ctx),
                validator=self._validator or StageValidator.from_config(self.project_root, self.config, ctx),
                store=store,
            )
            start_index = self._resume_index(session, resume_from)
            skip = set(skip_stages)
            self._check_skips(session, start_index, skip)

            results, abort_report = self._run_stages(state, start_index, skip)
        except BaseException:
            ctx.close("error")
            raise
        finally:
            if owns_store:
                store.close()

        result = MigrationResult(
            session=session,
            stage_results=results,
            abort_report=abort_report,
            processing_log=ctx.processing_log(),
        )
        result.summary = self._summarize(session, results, time.monotonic() - start)
        result.recommendations = self._recommend(session, results, abort_report, safety)

        ctx.logger.info(
            "Session %s: %d/%d stage(s) validated, %d failed, %d skipped",
            session.status.value, result.summary.successful_stages, result.summary.total_stages,
            result.summary.failed_stages, result.summary.skipped_stages,
        )
        ctx.close(session.status.value)
        return result

    # ── Session setup ──────────────────────────────────────────────────

    def _open_context(self, session_id: Optional[str]) -> SessionContext:
        if self._context is None:
            return SessionContext(session_id)
        if session_id and session_id != self._context.session_id:
            raise ConfigurationError(
                f"Session id {session_id} does not match context session {self._context.session_id}"
            )
        return self._context

    def _load_or_create(
        self,
        store: ManifestStore,
        safety: FileSafetyManager,
        ctx: SessionContext,
        boundaries: Sequence[Boundary],
    ) -> MigrationSession:
        session = store.load_session(ctx.session_id)

        if session is None:
            session = MigrationSession(
                session_id=ctx.session_id,
                project_root=self.project_root,
                config=self.config,
                stages=plan_stages(boundaries, self.config.max_stage_size),
            )
            ctx.logger.info(f"New session with {len(session.stages)} stage(s)")
            store.save_session(session)
            return session

        if session.status == SessionStatus.ABORTED and session.abort_reason != ABORT_CANCELLED:
            raise ConfigurationError(
                f"Session {session.session_id} was aborted and rolled back "
                f"({session.abort_reason}); start a new session"
            )

        adopted = safety.adopt(store.load_backup_entries(session.session_id))
        ctx.logger.info(f"Resuming session ({len(session.stages)} stage(s), {adopted} backup entr(ies))")

        for stage in session.stages:
            if stage.status in (StageStatus.APPLYING, StageStatus.VALIDATING, StageStatus.FAILED):
                ctx.logger.warning(f"Stage {stage.stage_id} was interrupted in {stage.status.value}; rolling back")
                self._rollback(stage, safety)
                stage.recover()
                store.save_stage(session.session_id, stage)

        if session.status != SessionStatus.COMPLETED:
            session.status = SessionStatus.RUNNING
            session.abort_reason = None
            session.updated_at = now_iso()
            store.save_session(session)
        return session

    @staticmethod
    def _resume_index(session: MigrationSession, resume_from: Optional[str]) -> int:
        if not resume_from:
            return 0
        for i, stage in enumerate(session.stages):
            if resume_from in (stage.stage_id, stage.boundary_id):
                return i
        raise ConfigurationError(f"Unknown resume point: {resume_from}")

    @staticmethod
    def _check_skips(session: MigrationSession, start_index: int, skip: set) -> None:
        """Refuse directives that would leave a critical stage unapplied."""
        blocked = [
            stage.stage_id
            for index, stage in enumerate(session.stages)
            if stage.critical
            and stage.status not in (StageStatus.VALIDATED, StageStatus.PERMANENTLY_FAILED)
            and (index < start_index or stage.stage_id in skip or stage.boundary_id in skip)
        ]
        if blocked:
            raise ConfigurationError(
                f"Critical stage(s) cannot be skipped: {', '.join(blocked)}",
                details=blocked,
            )

    # ── Stage loop ─────────────────────────────────────────────────────

    def _run_stages(self, state: _RunState, start_index: int, skip: set):
        session, ctx = state.session, state.ctx
        results: List[StageResult] = []

        if session.status == SessionStatus.COMPLETED:
            ctx.logger.info("Session already completed; nothing to do")
            return results, None

        for index, stage in enumerate(session.stages):
            session.current_index = index

            if stage.status == StageStatus.VALIDATED:
                ctx.logger.info(f"Stage {stage.stage_id}: already validated, skipping")
                continue
            if stage.status == StageStatus.PERMANENTLY_FAILED:
                ctx.logger.info(f"Stage {stage.stage_id}: permanently failed in an earlier run, skipping")
                continue
            if index < start_index or stage.stage_id in skip or stage.boundary_id in skip:
                if index < start_index:
                    ctx.logger.warning(f"Stage {stage.stage_id}: before resume point and not validated; skipping")
                else:
                    ctx.logger.info(f"Stage {stage.stage_id}: skipped by request")
                stage.skipped = True
                stage.updated_at = now_iso()
                state.store.save_stage(session.session_id, stage)
                results.append(StageResult(stage.stage_id, stage.status, DECISION_SKIP))
                continue

            stage.skipped = False
            session.updated_at = now_iso()
            state.store.save_session(session)

            try:
                result = self._run_stage(state, stage)
            except MigrationCancelled:
                ctx.logger.warning(f"Stage {stage.stage_id}: cancelled, rolling back in-flight changes")
                restored: List[str] = []
                if stage.status != StageStatus.PENDING:
                    restored = self._rollback(stage, state.safety)
                    stage.recover()
                state.store.save_stage(session.session_id, stage)
                results.append(StageResult(stage.stage_id, stage.status, DECISION_ABORT, error="cancelled"))
                return results, self._abort(state, ABORT_CANCELLED, restored)

            results.append(result)
            if result.decision == DECISION_ABORT:
                reason = f"Stage {stage.stage_id} permanently failed: {result.error}"
                return results, self._abort_and_restore(state, reason)

        session.status = SessionStatus.COMPLETED
        session.current_index = len(session.stages)
        session.completed_at = session.updated_at = now_iso()
        state.store.save_session(session)
        return results, None

    def _run_stage(self, state: _RunState, stage: Stage) -> StageResult:
        """Apply and validate one stage, retrying with scoped rollback.

        Raises:
            MigrationCancelled: Cancellation observed; the caller rolls back
        """
        ctx = state.ctx
        started = time.monotonic()
        result = StageResult(stage.stage_id, stage.status, DECISION_CONTINUE)

        while True:
            if self._cancel.is_set():
                raise MigrationCancelled()

            stage.error = None
            self._transition(state, stage, StageStatus.APPLYING)
            result.attempts += 1
            ctx.logger.info(
                f"Stage {stage.stage_id}: applying {len(stage.targets)} file(s) "
                f"(attempt {stage.retry_count + 1}/{self.config.max_retries + 1})"
            )

            error = self._apply(state, stage, result)
            if error is None:
                if self._cancel.is_set():
                    raise MigrationCancelled()
                self._transition(state, stage, StageStatus.VALIDATING)
                outcome = state.validator.validate(stage.stage_id, self._cancel)
                result.validation = outcome
                if outcome.cancelled:
                    raise MigrationCancelled()
                try:
                    outcome.raise_for_failure(stage.stage_id)
                except ValidationError as e:
                    error = e.message
                else:
                    self._transition(state, stage, StageStatus.VALIDATED)
                    state.safety.discard_checkpoint(stage.stage_id)
                    ctx.incr("stages_validated")
                    ctx.logger.info(f"Stage {stage.stage_id}: validated")
                    result.status = stage.status
                    result.duration_seconds = time.monotonic() - started
                    return result

            stage.error = error
            self._transition(state, stage, StageStatus.FAILED)
            ctx.logger.warning(f"Stage {stage.stage_id}: {error}")
            self._rollback(stage, state.safety)
            stage.touched_files = []
            state.store.save_stage(state.session.session_id, stage)

            if stage.retry_count < self.config.max_retries:
                stage.retry_count += 1
                ctx.incr("stage_retries")
                state.store.save_stage(state.session.session_id, stage)
                ctx.logger.info(f"Stage {stage.stage_id}: retry {stage.retry_count}/{self.config.max_retries}")
                continue

            self._transition(state, stage, StageStatus.PERMANENTLY_FAILED)
            ctx.incr("stages_failed")
            result.status = stage.status
            result.error = error
            result.duration_seconds = time.monotonic() - started

            if not stage.critical and self.config.continue_on_non_critical_failure:
                ctx.logger.error(f"Stage {stage.stage_id}: permanently failed (non-critical); continuing")
                result.decision = DECISION_CONTINUE
            else:
                ctx.logger.error(f"Stage {stage.stage_id}: permanently failed; aborting session")
                result.decision = DECISION_ABORT
            return result

    def _apply(self, state: _RunState, stage: Stage, result: StageResult) -> Optional[str]:
        """Produce and write the stage's patches. Returns an error or None."""
        stage.touched_files = []
        result.applied, result.failed = [], []

        patches: List[Patch] = []
        try:
            for target in stage.targets:
                produced, _method = state.producer.produce(stage.boundary_id, target)
                patches.extend(produced)
        except (StageloomError, OSError, ValueError) as e:
            return f"Patch production failed: {e}"
        stage.patches = patches

        groups: Dict[str, List[Patch]] = {}
        try:
            for patch in patches:
                groups.setdefault(state.safety.relative(patch.path), []).append(patch)
        except WriteError as e:
            return e.message

        # Checkpoint, then touched files, then writes: a recorded attempt
        # always has a checkpoint to roll back to
        try:
            state.safety.checkpoint(stage.stage_id, list(groups))
        except WriteError as e:
            return e.message
        stage.touched_files = list(groups)
        state.store.save_stage(state.session.session_id, stage)

        if groups:
            workers = min(self.config.write_workers, len(groups))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stageloom-write") as pool:
                futures = {
                    pool.submit(self._write_group, state.safety, path, group): path
                    for path, group in groups.items()
                }
                for future in as_completed(futures):
                    path = futures[future]
                    try:
                        future.result()
                        result.applied.append(path)
                    except WriteError as e:
                        state.ctx.logger.error(f"Stage {stage.stage_id}: {e.message}")
                        result.failed.append(path)

        result.applied.sort()
        result.failed.sort()

        if result.failed:
            return f"{len(result.failed)} write(s) failed: {', '.join(result.failed)}"
        return None

    @staticmethod
    def _write_group(safety: FileSafetyManager, path: str, patches: List[Patch]) -> None:
        for patch in patches:
            safety.safe_write(path, patch.content)

    def _transition(self, state: _RunState, stage: Stage, status: StageStatus) -> None:
        stage.transition(status)
        state.session.updated_at = stage.updated_at
        state.store.save_stage(state.session.session_id, stage)

    @staticmethod
    def _rollback(stage: Stage, safety: FileSafetyManager) -> List[str]:
        """Undo the stage's latest attempt (scoped rollback).

        Files return to their content from just before the attempt, so a
        path shared with an earlier validated stage keeps that stage's change.
        """
        checkpoint = safety.load_checkpoint(stage.stage_id)
        if checkpoint is not None:
            restored = safety.rollback_to(checkpoint)
            safety.discard_checkpoint(stage.stage_id)
            return restored

        paths = [p for p in stage.touched_files if safety.has_backup(p)]
        if not paths:
            return []
        logger.warning(f"Stage {stage.stage_id}: no checkpoint; restoring pre-session content")
        return safety.restore_many(paths)

    # ── Abort ──────────────────────────────────────────────────────────

    def _abort(self, state: _RunState, reason: str, restored: List[str]) -> AbortReport:
        session = state.session
        session.status = SessionStatus.ABORTED
        session.abort_reason = reason
        session.updated_at = now_iso()
        state.store.save_session(session)

        restored_set = set(restored)
        report = AbortReport(
            reason=reason,
            completed_stages=[s.stage_id for s in session.stages if s.status == StageStatus.VALIDATED],
            modified_files=sorted(
                e.original_path for e in state.safety.entries() if e.original_path not in restored_set
            ),
            restored_files=sorted(restored_set),
            backup_location=state.safety.backup_dir,
        )
        state.ctx.logger.error(
            f"Session aborted: {reason}. {len(report.restored_files)} file(s) restored, "
            f"{len(report.modified_files)} still modified; backups in {report.backup_location}"
        )
        return report

    def _abort_and_restore(self, state: _RunState, reason: str) -> AbortReport:
        try:
            restored = state.safety.restore_all()
        except RestoreError as e:
            state.session.status = SessionStatus.ABORTED
            state.session.abort_reason = f"{reason}; restore failed: {e.message}"
            state.session.updated_at = now_iso()
            state.store.save_session(state.session)
            state.ctx.logger.critical(f"Rollback incomplete: {e.message} ({e.details})")
            raise
        return self._abort(state, reason, restored)

    # ── Reporting ──────────────────────────────────────────────────────

    @staticmethod
    def _summarize(session: MigrationSession, results: List[StageResult], duration: float) -> MigrationSummary:
        return MigrationSummary(
            total_stages=len(session.stages),
            successful_stages=sum(1 for s in session.stages if s.status == StageStatus.VALIDATED),
            failed_stages=sum(1 for s in session.stages if s.status == StageStatus.PERMANENTLY_FAILED),
            skipped_stages=sum(1 for s in session.stages if s.skipped),
            total_patches=sum(len(session.stage(r.stage_id).patches) for r in results if r.attempts),
            applied_patches=sum(len(r.applied) for r in results if r.status == StageStatus.VALIDATED),
            duration_seconds=duration,
        )

    @staticmethod
    def _recommend(
        session: MigrationSession,
        results: List[StageResult],
        abort_report: Optional[AbortReport],
        safety: FileSafetyManager,
    ) -> List[str]:
        recommendations: List[str] = []
        failed = [r for r in results if r.status == StageStatus.PERMANENTLY_FAILED]

        if failed:
            recommendations.append("Review failed stages and consider manual intervention")
            for r in failed:
                phase = r.validation.failed_phase if r.validation else None
                if phase == "build":
                    recommendations.append(f"Stage {r.stage_id}: Fix build errors - {r.error}")
                elif phase == "test":
                    recommendations.append(f"Stage {r.stage_id}: Fix test failures - {r.error}")
                else:
                    recommendations.append(f"Stage {r.stage_id}: {r.error}")

        skipped = sum(1 for s in session.stages if s.skipped)
        if skipped:
            recommendations.append(f"{skipped} stages were skipped - consider manual completion")

        if abort_report is not None:
            if abort_report.reason == ABORT_CANCELLED:
                recommendations.append(f"Resume with session id {session.session_id} to continue")
            recommendations.append(f"Backups for manual recovery: {safety.backup_dir}")
        return recommendations
