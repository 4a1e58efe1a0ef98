"""Tests for StagedMigrationRunner: stage state machine, rollback, resume.

Tests cover:
- Happy path across dependent boundaries
- Retry with scoped rollback, then success
- Rolling back a stage keeps earlier validated changes to shared files
- Retry exhaustion: continue on non-critical, abort + restore_all otherwise
- Write failure fails the whole stage before validation
- Producer failure falls back to the template producer
- Cancellation rolls back only the in-flight stage; session is resumable
- Resume never re-produces validated stages; interrupted stages are rolled back
- resume_from / skip_stages directives; critical stages are never skipped
- Backup entries reach the manifest before files are written
"""

from unittest.mock import MagicMock, patch

import pytest

from stageloom.core.config import MigrationConfig
from stageloom.core.errors import ConfigurationError
from stageloom.core.migration import (
    Boundary,
    CommandResult,
    ManifestStore,
    MigrationSession,
    PatchProducer,
    SessionStatus,
    StagedMigrationRunner,
    StageStatus,
    ValidationOutcome,
    plan_stages,
)
from stageloom.core.quality.evaluator import METHOD_AI, METHOD_FALLBACK
from stageloom.core.safety import FileSafetyManager


# ── Fixtures ──────────────────────────────────────────────────────────────


class _MigratingProducer(PatchProducer):
    """Replace each target with a marker naming its boundary."""

    def __init__(self):
        self.calls = []

    def produce(self, boundary_id, target_file):
        self.calls.append((boundary_id, target_file))
        return [{
            "path": target_file,
            "content": f"migrated by {boundary_id}\n",
            "description": "test patch",
            "metadata": {"rules": 1},
        }]


class _FailingProducer(PatchProducer):
    def produce(self, boundary_id, target_file):
        raise RuntimeError("model unavailable")


def _ok():
    return ValidationOutcome(build=CommandResult(["make"], 0, "ok"))


def _failed(output="compile error"):
    return ValidationOutcome(build=CommandResult(["make"], 1, output))


def _make_validator(failing=(), always=None):
    """Validator failing for stage ids in ``failing`` (or per ``always`` callable)."""
    validator = MagicMock()

    def validate(stage_id, cancel_event=None):
        if always is not None:
            return always(stage_id)
        return _failed() if stage_id in failing else _ok()

    validator.validate.side_effect = validate
    return validator


def _make_project(tmp_path):
    files = {
        "core/a.py": "core a\n",
        "api/b.py": "api b\n",
        "api/c.py": "api c\n",
        "ui/d.py": "ui d\n",
    }
    for rel, content in files.items():
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return files


def _make_boundaries(api_critical=False, core_critical=False):
    return [
        Boundary("ui", ["ui/d.py"], depends_on=["api"]),
        Boundary("api", ["api/b.py", "api/c.py"], depends_on=["core"], critical=api_critical),
        Boundary("core", ["core/a.py"], critical=core_critical),
    ]


def _make_runner(tmp_path, validator=None, producer=None, **config):
    config.setdefault("max_retries", 1)
    return StagedMigrationRunner(
        str(tmp_path),
        MigrationConfig(**config),
        producer=producer if producer is not None else _MigratingProducer(),
        validator=validator or _make_validator(),
    )


def _read(tmp_path, rel):
    return (tmp_path / rel).read_text()


# ── Tests: happy path ─────────────────────────────────────────────────────


class TestHappyPath:

    def test_all_stages_validated_in_dependency_order(self, tmp_path):
        _make_project(tmp_path)
        producer = _MigratingProducer()
        runner = _make_runner(tmp_path, producer=producer)

        result = runner.run(_make_boundaries())

        assert result.completed
        assert [r.stage_id for r in result.stage_results] == ["core#1", "api#1", "ui#1"]
        assert all(s.status == StageStatus.VALIDATED for s in result.session.stages)
        assert _read(tmp_path, "api/c.py") == "migrated by api\n"
        assert [c[0] for c in producer.calls] == ["core", "api", "api", "ui"]
        assert result.abort_report is None

    def test_summary(self, tmp_path):
        _make_project(tmp_path)
        result = _make_runner(tmp_path).run(_make_boundaries())

        assert result.summary.total_stages == 3
        assert result.summary.successful_stages == 3
        assert result.summary.failed_stages == 0
        assert result.summary.total_patches == 4
        assert result.summary.applied_patches == 4
        assert result.recommendations == []

    def test_processing_log_records_method(self, tmp_path):
        _make_project(tmp_path)
        result = _make_runner(tmp_path).run(_make_boundaries())

        entries = result.processing_log.entries
        assert len(entries) == 4
        assert {e.method for e in entries} == {METHOD_AI}
        assert not any(e.empty for e in entries)

    def test_state_is_persisted(self, tmp_path):
        _make_project(tmp_path)
        result = _make_runner(tmp_path).run(_make_boundaries())

        stored = ManifestStore.for_project(str(tmp_path)).load_session(result.session.session_id)
        assert stored.status == SessionStatus.COMPLETED
        assert [s.status for s in stored.stages] == [StageStatus.VALIDATED] * 3
        assert stored.stage("api#1").touched_files == ["api/b.py", "api/c.py"]

    def test_oversized_boundary_split(self, tmp_path):
        _make_project(tmp_path)
        result = _make_runner(tmp_path, max_stage_size=1).run(_make_boundaries())
        assert [s.stage_id for s in result.session.stages] == ["core#1", "api#1", "api#2", "ui#1"]


# ── Tests: retries and failures ───────────────────────────────────────────


class TestRetries:

    def test_retry_then_success(self, tmp_path):
        _make_project(tmp_path)
        outcomes = iter([_failed(), _ok()])
        validator = _make_validator(always=lambda stage_id: next(outcomes) if stage_id == "core#1" else _ok())

        result = _make_runner(tmp_path, validator=validator).run(_make_boundaries())

        core = result.session.stage("core#1")
        assert result.completed
        assert core.status == StageStatus.VALIDATED
        assert core.retry_count == 1
        assert result.stage_results[0].attempts == 2

    def test_exhausted_non_critical_stage_is_rolled_back_and_run_continues(self, tmp_path):
        files = _make_project(tmp_path)
        validator = _make_validator(failing={"ui#1"})

        result = _make_runner(tmp_path, validator=validator, max_retries=2).run(_make_boundaries())

        ui = result.session.stage("ui#1")
        assert ui.status == StageStatus.PERMANENTLY_FAILED
        assert ui.retry_count == 2
        assert result.stage_results[-1].attempts == 3
        assert _read(tmp_path, "ui/d.py") == files["ui/d.py"]
        assert _read(tmp_path, "core/a.py") == "migrated by core\n"
        assert result.session.status == SessionStatus.COMPLETED
        assert result.summary.failed_stages == 1

    def test_failure_recommendations(self, tmp_path):
        _make_project(tmp_path)
        validator = _make_validator(failing={"ui#1"})

        result = _make_runner(tmp_path, validator=validator).run(_make_boundaries())

        assert "Review failed stages and consider manual intervention" in result.recommendations
        assert any(r.startswith("Stage ui#1: Fix build errors - ") for r in result.recommendations)

    def test_scoped_rollback_leaves_earlier_stages(self, tmp_path):
        files = _make_project(tmp_path)
        seen = []

        def check(stage_id):
            if stage_id == "api#1":
                seen.append(_read(tmp_path, "core/a.py"))
                return _failed()
            return _ok()

        _make_runner(tmp_path, validator=_make_validator(always=check)).run(_make_boundaries())

        assert seen == ["migrated by core\n", "migrated by core\n"]
        assert _read(tmp_path, "api/b.py") == files["api/b.py"]
        assert _read(tmp_path, "core/a.py") == "migrated by core\n"

    def test_rollback_keeps_earlier_stage_change_to_shared_file(self, tmp_path):
        (tmp_path / "index.py").write_text("index0\n")
        boundaries = [Boundary("a", ["index.py"]), Boundary("b", ["index.py"], depends_on=["a"])]
        validator = _make_validator(failing={"b#1"})

        result = _make_runner(tmp_path, validator=validator, max_retries=1).run(boundaries)

        assert result.session.stage("a#1").status == StageStatus.VALIDATED
        assert result.session.stage("b#1").status == StageStatus.PERMANENTLY_FAILED
        assert result.session.status == SessionStatus.COMPLETED
        assert _read(tmp_path, "index.py") == "migrated by a\n"

    def test_abort_after_shared_file_rollback_restores_pre_session_content(self, tmp_path):
        (tmp_path / "index.py").write_text("index0\n")
        boundaries = [Boundary("a", ["index.py"]), Boundary("b", ["index.py"], depends_on=["a"], critical=True)]
        validator = _make_validator(failing={"b#1"})

        result = _make_runner(tmp_path, validator=validator, max_retries=0).run(boundaries)

        assert result.session.status == SessionStatus.ABORTED
        assert _read(tmp_path, "index.py") == "index0\n"

    def test_critical_failure_aborts_and_restores_all(self, tmp_path):
        files = _make_project(tmp_path)
        validator = _make_validator(failing={"api#1"})

        result = _make_runner(tmp_path, validator=validator).run(_make_boundaries(api_critical=True))

        assert result.session.status == SessionStatus.ABORTED
        for rel, content in files.items():
            assert _read(tmp_path, rel) == content
        report = result.abort_report
        assert report.completed_stages == ["core#1"]
        assert report.restored_files == ["api/b.py", "api/c.py", "core/a.py"]
        assert report.modified_files == []
        assert report.backup_location.endswith(result.session.session_id)
        assert result.session.stage("ui#1").status == StageStatus.PENDING

    def test_continue_disabled_aborts_on_non_critical(self, tmp_path):
        _make_project(tmp_path)
        validator = _make_validator(failing={"ui#1"})
        runner = _make_runner(tmp_path, validator=validator, continue_on_non_critical_failure=False)

        result = runner.run(_make_boundaries())

        assert result.session.status == SessionStatus.ABORTED
        assert not result.completed

    def test_aborted_session_cannot_be_resumed(self, tmp_path):
        _make_project(tmp_path)
        validator = _make_validator(failing={"core#1"})
        first = _make_runner(tmp_path, validator=validator).run(_make_boundaries(core_critical=True))

        with pytest.raises(ConfigurationError):
            _make_runner(tmp_path).run([], session_id=first.session.session_id)

    def test_write_failure_fails_whole_stage_without_validation(self, tmp_path):
        files = _make_project(tmp_path)
        (tmp_path / "blocker").write_text("a file, not a directory")

        class _Producer(PatchProducer):
            def produce(self, boundary_id, target_file):
                return [
                    {"path": target_file, "content": "new\n"},
                    {"path": "blocker/extra.py", "content": "x\n"},
                ]

        validator = _make_validator()
        runner = _make_runner(tmp_path, validator=validator, producer=_Producer(), max_retries=0)

        result = runner.run([Boundary("core", ["core/a.py"])])

        stage_result = result.stage_results[0]
        assert stage_result.status == StageStatus.PERMANENTLY_FAILED
        assert stage_result.failed == ["blocker/extra.py"]
        assert stage_result.applied == ["core/a.py"]
        assert _read(tmp_path, "core/a.py") == files["core/a.py"]
        validator.validate.assert_not_called()


# ── Tests: producer fallback ──────────────────────────────────────────────


class TestProducerFallback:

    def test_primary_failure_uses_template(self, tmp_path):
        _make_project(tmp_path)
        runner = _make_runner(tmp_path, producer=_FailingProducer())

        result = runner.run([Boundary("core", ["core/a.py"])])

        assert result.completed
        assert _read(tmp_path, "core/a.py") == "# stageloom: boundary=core\ncore a\n"
        entry = result.processing_log.entries[0]
        assert entry.method == METHOD_FALLBACK
        assert entry.empty

    def test_template_is_idempotent_across_retries(self, tmp_path):
        _make_project(tmp_path)
        outcomes = iter([_failed(), _ok()])
        runner = _make_runner(
            tmp_path,
            producer=_FailingProducer(),
            validator=_make_validator(always=lambda stage_id: next(outcomes)),
        )

        runner.run([Boundary("core", ["core/a.py"])])

        assert _read(tmp_path, "core/a.py") == "# stageloom: boundary=core\ncore a\n"


# ── Tests: cancellation and resume ────────────────────────────────────────


class TestCancelAndResume:

    def _cancel_during(self, tmp_path, stage_to_cancel="api#1"):
        holder = {}

        def validate(stage_id):
            if stage_id == stage_to_cancel:
                holder["runner"].cancel()
                return ValidationOutcome(build=CommandResult(["make"], -9, "", cancelled=True))
            return _ok()

        runner = _make_runner(tmp_path, validator=_make_validator(always=validate))
        holder["runner"] = runner
        return runner.run(_make_boundaries())

    def test_cancel_rolls_back_only_in_flight_stage(self, tmp_path):
        files = _make_project(tmp_path)

        result = self._cancel_during(tmp_path)

        assert result.session.status == SessionStatus.ABORTED
        assert result.session.abort_reason == "cancelled"
        assert _read(tmp_path, "core/a.py") == "migrated by core\n"
        assert _read(tmp_path, "api/b.py") == files["api/b.py"]
        report = result.abort_report
        assert report.completed_stages == ["core#1"]
        assert report.restored_files == ["api/b.py", "api/c.py"]
        assert report.modified_files == ["core/a.py"]
        assert result.session.stage("api#1").status == StageStatus.PENDING
        assert any("Resume with session id" in r for r in result.recommendations)

    def test_cancel_before_run_writes_nothing(self, tmp_path):
        files = _make_project(tmp_path)
        runner = _make_runner(tmp_path)
        runner.cancel()

        result = runner.run(_make_boundaries())

        assert result.session.status == SessionStatus.ABORTED
        for rel, content in files.items():
            assert _read(tmp_path, rel) == content

    def test_resume_skips_validated_stages(self, tmp_path):
        _make_project(tmp_path)
        first = self._cancel_during(tmp_path)
        producer = _MigratingProducer()

        result = _make_runner(tmp_path, producer=producer).run([], session_id=first.session.session_id)

        assert result.completed
        assert [c[0] for c in producer.calls] == ["api", "api", "ui"]
        assert [r.stage_id for r in result.stage_results] == ["api#1", "ui#1"]
        assert _read(tmp_path, "api/b.py") == "migrated by api\n"

    def test_resume_reuses_pre_session_backups(self, tmp_path):
        files = _make_project(tmp_path)
        first = self._cancel_during(tmp_path)
        sid = first.session.session_id

        _make_runner(tmp_path).run([], session_id=sid)

        safety = FileSafetyManager(str(tmp_path), sid)
        safety.adopt(ManifestStore.for_project(str(tmp_path)).load_backup_entries(sid))
        safety.restore_all()
        for rel, content in files.items():
            assert _read(tmp_path, rel) == content

    def test_interrupted_stage_is_rolled_back_on_resume(self, tmp_path):
        files = _make_project(tmp_path)
        config = MigrationConfig()
        store = ManifestStore.for_project(str(tmp_path))
        session = MigrationSession("crashed", str(tmp_path), config, plan_stages([Boundary("core", ["core/a.py"])]))
        stage = session.stages[0]
        stage.transition(StageStatus.APPLYING)
        stage.touched_files = ["core/a.py"]
        store.save_session(session)
        safety = FileSafetyManager(str(tmp_path), "crashed")
        safety.safe_write("core/a.py", "half-written")
        store.save_backup_entries("crashed", safety.entries())

        runner = StagedMigrationRunner(str(tmp_path), config, validator=_make_validator())
        result = runner.run([], session_id="crashed")

        assert result.completed
        assert _read(tmp_path, "core/a.py") == "# stageloom: boundary=core\n" + files["core/a.py"]

    def test_half_written_file_recovered_when_entry_was_never_saved(self, tmp_path):
        (tmp_path / "a.py").write_text("ORIGINAL\n")
        config = MigrationConfig(max_retries=0)
        store = ManifestStore.for_project(str(tmp_path))
        session = MigrationSession(
            "crashed", str(tmp_path), config, plan_stages([Boundary("core", ["a.py"], critical=True)])
        )
        stage = session.stages[0]
        stage.transition(StageStatus.APPLYING)
        stage.touched_files = ["a.py"]
        store.save_session(session)
        FileSafetyManager(str(tmp_path), "crashed").safe_write("a.py", "HALF\n")

        runner = StagedMigrationRunner(str(tmp_path), config, validator=_make_validator(failing={"core#1"}))
        result = runner.run([], session_id="crashed")

        assert result.session.status == SessionStatus.ABORTED
        assert _read(tmp_path, "a.py") == "ORIGINAL\n"

    def test_attempt_interrupted_mid_write_rolls_back_to_checkpoint(self, tmp_path):
        (tmp_path / "index.py").write_text("index0\n")
        config = MigrationConfig(max_retries=0)
        boundaries = [Boundary("a", ["index.py"]), Boundary("b", ["index.py"], depends_on=["a"])]
        runner = StagedMigrationRunner(str(tmp_path), config, producer=_MigratingProducer(),
                                       validator=_make_validator(failing={"b#1"}))
        first = runner.run(boundaries, session_id="s1")
        assert first.session.status == SessionStatus.COMPLETED

        # Simulate a crash inside b#1: checkpoint taken, file half-written
        store = ManifestStore.for_project(str(tmp_path))
        session = store.load_session("s1")
        session.status = SessionStatus.RUNNING
        stage = session.stage("b#1")
        stage.status = StageStatus.APPLYING
        stage.touched_files = ["index.py"]
        store.save_session(session)
        safety = FileSafetyManager(str(tmp_path), "s1")
        safety.adopt(store.load_backup_entries("s1"))
        safety.checkpoint("b#1", ["index.py"])
        safety.safe_write("index.py", "HALF\n")

        StagedMigrationRunner(str(tmp_path), config, validator=_make_validator()).run([], session_id="s1")

        assert _read(tmp_path, "index.py") == "# stageloom: boundary=b\nmigrated by a\n"

    def test_unknown_resume_point(self, tmp_path):
        _make_project(tmp_path)
        with pytest.raises(ConfigurationError):
            _make_runner(tmp_path).run(_make_boundaries(), resume_from="nope")


# ── Tests: directives ─────────────────────────────────────────────────────


class TestDirectives:

    def test_resume_from_skips_earlier_stages(self, tmp_path):
        files = _make_project(tmp_path)
        producer = _MigratingProducer()

        result = _make_runner(tmp_path, producer=producer).run(_make_boundaries(), resume_from="api")

        assert result.completed
        assert _read(tmp_path, "core/a.py") == files["core/a.py"]
        assert result.session.stage("core#1").skipped
        assert "core" not in [c[0] for c in producer.calls]
        assert "1 stages were skipped - consider manual completion" in result.recommendations

    def test_skip_stages(self, tmp_path):
        files = _make_project(tmp_path)

        result = _make_runner(tmp_path).run(_make_boundaries(), skip_stages=["api#1"])

        assert result.completed
        assert result.summary.skipped_stages == 1
        assert _read(tmp_path, "api/b.py") == files["api/b.py"]
        assert _read(tmp_path, "ui/d.py") == "migrated by ui\n"
        skipped = [r for r in result.stage_results if r.decision == "skip"]
        assert [r.stage_id for r in skipped] == ["api#1"]

    def test_critical_stage_cannot_be_skipped(self, tmp_path):
        files = _make_project(tmp_path)
        producer = _MigratingProducer()

        with pytest.raises(ConfigurationError) as exc:
            _make_runner(tmp_path, producer=producer).run(_make_boundaries(api_critical=True), skip_stages=["api"])

        assert exc.value.details == ["api#1"]
        assert producer.calls == []
        for rel, content in files.items():
            assert _read(tmp_path, rel) == content

    def test_resume_from_past_unvalidated_critical_stage_is_refused(self, tmp_path):
        files = _make_project(tmp_path)

        with pytest.raises(ConfigurationError):
            _make_runner(tmp_path).run(_make_boundaries(core_critical=True), resume_from="api")

        assert _read(tmp_path, "api/b.py") == files["api/b.py"]


# ── Tests: manifest persistence ───────────────────────────────────────────


class TestManifestPersistence:

    def test_backup_entries_saved_before_validation(self, tmp_path):
        _make_project(tmp_path)
        store = ManifestStore.for_project(str(tmp_path))
        seen = {}

        def check(stage_id):
            seen[stage_id] = sorted(e.original_path for e in store.load_backup_entries("s1"))
            return _ok()

        runner = StagedMigrationRunner(
            str(tmp_path), MigrationConfig(), producer=_MigratingProducer(),
            validator=_make_validator(always=check), store=store,
        )
        runner.run([Boundary("api", ["api/b.py", "api/c.py"])], session_id="s1")

        assert seen == {"api#1": ["api/b.py", "api/c.py"]}

    def test_owned_store_is_closed(self, tmp_path):
        _make_project(tmp_path)
        with patch.object(ManifestStore, "close", autospec=True) as close:
            _make_runner(tmp_path).run(_make_boundaries())
        close.assert_called_once()

    def test_owned_store_is_closed_on_error(self, tmp_path):
        _make_project(tmp_path)
        with patch.object(ManifestStore, "close", autospec=True) as close:
            with pytest.raises(ConfigurationError):
                _make_runner(tmp_path).run(_make_boundaries(), resume_from="nope")
        close.assert_called_once()

    def test_injected_store_is_left_open(self, tmp_path):
        _make_project(tmp_path)
        store = ManifestStore.for_project(str(tmp_path))
        with patch.object(ManifestStore, "close", autospec=True) as close:
            StagedMigrationRunner(
                str(tmp_path), MigrationConfig(), producer=_MigratingProducer(),
                validator=_make_validator(), store=store,
            ).run(_make_boundaries())
        close.assert_not_called()
