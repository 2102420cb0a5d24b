"""Tests for the per-iteration engine."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from iterctl.config import CoreConfig, LoopConfig, RecoveryConfig, ReplanConfig, ScopeConfig
from iterctl.engine import IterationEngine, append_progress
from iterctl.errors import AgentExecutionError, IterctlError, PlanFileError
from iterctl.plan import Plan, read_plans, write_plans
from iterctl.recovery import FailureType
from iterctl.replan import ReplanStrategyType, TriggerType
from iterctl.scope import DeferReason

TEST_FAILURE_OUTPUT = "=== RUN   TestParse\n--- FAIL: TestParse (0.00s)\n    parser_test.go:12: want 3, got 2\nFAIL"


@pytest.fixture
def plan_path(tmp_path: Path) -> Path:
    path = tmp_path / "plan.json"
    write_plans(
        path,
        [
            Plan(id=1, category="setup", description="Project skeleton", tested=True),
            Plan(id=7, category="core", description="Add parser", steps=["lex", "parse"]),
            Plan(id=8, category="core", description="Add printer"),
        ],
    )
    return path


def make_config(**sections) -> LoopConfig:
    return LoopConfig(
        core=sections.get("core", CoreConfig()),
        recovery=sections.get("recovery", RecoveryConfig()),
        scope=sections.get("scope", ScopeConfig()),
        replan=sections.get("replan", ReplanConfig()),
    )


class TestAppendProgress:
    def test_appends_timestamped_entries(self, tmp_path: Path):
        path = tmp_path / "progress.txt"
        assert append_progress(path, "first")
        assert append_progress(path, "second")
        text = path.read_text()
        assert text.count("\n[") == 2
        assert "] first\n" in text
        assert text.index("first") < text.index("second")

    def test_unwritable_path(self, tmp_path: Path):
        assert not append_progress(tmp_path / "missing" / "progress.txt", "x")


class TestIterationEngine:
    """Tests for IterationEngine."""

    def test_picks_first_pending_feature(self, plan_path: Path):
        engine = IterationEngine(make_config(), plan_path)
        start = engine.begin_iteration(1)
        assert start.feature_id == 7
        assert engine.current_plan.description == "Add parser"
        assert engine.scope.total_iterations == 1

    def test_success_path(self, plan_path: Path):
        engine = IterationEngine(make_config(), plan_path)
        engine.begin_iteration(1)
        outcome = engine.complete_iteration("ok: all tests passed", 0)
        assert outcome.succeeded
        assert outcome.failure is None
        assert engine.consecutive_failures == 0
        assert outcome.recommended_trigger == TriggerType.NONE
        assert engine.replan.state.total_iterations == 1

    def test_complete_without_begin(self, plan_path: Path):
        engine = IterationEngine(make_config(), plan_path)
        with pytest.raises(IterctlError):
            engine.complete_iteration("", 0)

    def test_missing_plan_file(self, tmp_path: Path):
        engine = IterationEngine(make_config(), tmp_path / "missing.json")
        with pytest.raises(PlanFileError):
            engine.begin_iteration(1)

    def test_no_pending_features(self, tmp_path: Path):
        path = tmp_path / "plan.json"
        write_plans(path, [Plan(id=1, tested=True), Plan(id=2, deferred=True)])
        engine = IterationEngine(make_config(), path)
        start = engine.begin_iteration(1)
        assert start.feature_id == 0
        assert engine.current_plan is None

    def test_retry_guidance_carried_to_next_iteration(self, plan_path: Path):
        engine = IterationEngine(make_config(), plan_path)
        engine.begin_iteration(1)
        outcome = engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)

        assert outcome.failure.kind == FailureType.TEST
        assert outcome.recovery.should_retry
        assert engine.consecutive_failures == 1

        start = engine.begin_iteration(2)
        assert start.feature_id == 7
        assert start.guidance == outcome.recovery.modified_prompt
        assert start.guidance

        progress = (plan_path.parent / "progress.txt").read_text()
        assert "FAILURE [test_failure]" in progress
        assert "(feature #7, retry 1)" in progress

    def test_repeated_failures_trigger_replan(self, plan_path: Path):
        """Two test failures with a retry budget of two skip the feature and replan."""
        config = make_config(
            recovery=RecoveryConfig(max_retries=2),
            replan=ReplanConfig(auto_replan=True, threshold=2, strategy="incremental"),
        )
        engine = IterationEngine(config, plan_path)

        engine.begin_iteration(1)
        first = engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)
        assert first.recovery.should_retry
        assert first.replan is None

        engine.begin_iteration(2)
        second = engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)

        assert second.recovery.should_skip
        assert second.recommended_trigger == TriggerType.TEST_FAILURE
        assert second.replan is not None
        assert second.replan.success
        assert second.replan.strategy == ReplanStrategyType.INCREMENTAL
        assert "Marked feature #7 for review" in second.replan.message

        versions = engine.replan.get_versions()
        assert [v.version for v in versions] == [1]
        assert versions[0].path == plan_path.parent / "plan.bak.1.json"

        revised = {p.id: p for p in read_plans(plan_path)}
        assert "[REQUIRES REVIEW" in revised[7].description
        assert engine.consecutive_failures == 0
        assert engine.recovery.tracker.get_retry_count(7) == 0

        progress = (plan_path.parent / "progress.txt").read_text()
        assert "REPLAN: test_failure triggered, strategy: incremental" in progress

        # The skipped feature is not picked again
        assert engine.begin_iteration(3).feature_id == 8

    def test_trigger_recommended_without_auto_replan(self, plan_path: Path):
        config = make_config(replan=ReplanConfig(auto_replan=False, threshold=1))
        engine = IterationEngine(config, plan_path)
        engine.begin_iteration(1)
        outcome = engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)
        assert outcome.recommended_trigger == TriggerType.TEST_FAILURE
        assert outcome.replan is None
        assert engine.replan.get_versions() == []

    def test_none_strategy_never_replans(self, plan_path: Path):
        config = make_config(replan=ReplanConfig(auto_replan=True, threshold=1, strategy="none"))
        engine = IterationEngine(config, plan_path)
        engine.begin_iteration(1)
        outcome = engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)
        assert outcome.recommended_trigger == TriggerType.TEST_FAILURE
        assert outcome.replan is None

    def test_external_plan_edit_detected(self, plan_path: Path):
        engine = IterationEngine(make_config(), plan_path)
        engine.begin_iteration(1)
        engine.complete_iteration("done", 0)

        plans = read_plans(plan_path)
        plans[2].description = "Add pretty printer"
        write_plans(plan_path, plans)

        engine.begin_iteration(2)
        outcome = engine.complete_iteration("done", 0)
        assert outcome.recommended_trigger == TriggerType.REQUIREMENT_CHANGE

    def test_scope_limit_defers_feature(self, plan_path: Path):
        config = make_config(scope=ScopeConfig(scope_limit=1))
        engine = IterationEngine(config, plan_path)

        assert engine.begin_iteration(1).feature_id == 7
        engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)

        start = engine.begin_iteration(2)
        assert start.deferred == [(7, DeferReason.ITERATION_LIMIT)]
        assert start.feature_id == 8

        deferred = {p.id: p for p in read_plans(plan_path)}[7]
        assert deferred.deferred
        assert deferred.defer_reason == "iteration_limit"

        progress = (plan_path.parent / "progress.txt").read_text()
        assert "DEFERRED: Feature #7 - exceeded iteration limit (iterations used: 1)" in progress

        # The engine's own write is not mistaken for an external edit
        outcome = engine.complete_iteration("done", 0)
        assert outcome.recommended_trigger == TriggerType.NONE

    def test_scope_limit_without_auto_defer(self, plan_path: Path):
        config = make_config(scope=ScopeConfig(scope_limit=1, auto_defer=False))
        engine = IterationEngine(config, plan_path)
        engine.begin_iteration(1)
        engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)

        start = engine.begin_iteration(2)
        assert start.feature_id == 7
        assert start.deferred == []

    def test_deadline_stops_run(self, plan_path: Path):
        engine = IterationEngine(make_config(), plan_path)
        engine.scope.set_deadline_duration(timedelta(seconds=-1))
        start = engine.begin_iteration(1)
        assert start.deadline_exceeded
        assert start.feature_id == 0

    def test_simplification_suggested_once(self, tmp_path: Path):
        path = tmp_path / "plan.json"
        write_plans(path, [Plan(id=1, description="Build complete auth", steps=[str(i) for i in range(8)])])
        engine = IterationEngine(make_config(), path)

        first = engine.begin_iteration(1)
        assert first.suggestions
        engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)
        assert engine.begin_iteration(2).suggestions == []

    def test_replan_error_does_not_end_run(self, plan_path: Path):
        def runner(prompt: str) -> str:
            raise AgentExecutionError("agent exited with code 1")

        original = plan_path.read_bytes()
        config = make_config(replan=ReplanConfig(auto_replan=True, threshold=1, strategy="agent"))
        engine = IterationEngine(config, plan_path, agent_runner=runner)

        engine.begin_iteration(1)
        outcome = engine.complete_iteration(TEST_FAILURE_OUTPUT, 1)

        assert outcome.replan is None
        assert outcome.replan_error == "agent exited with code 1"
        assert plan_path.read_bytes() == original
        assert engine.consecutive_failures == 1

    def test_progress_file_absolute_path(self, plan_path: Path, tmp_path: Path):
        progress = tmp_path / "logs-progress.txt"
        config = make_config(core=CoreConfig(progress_file=str(progress)))
        engine = IterationEngine(config, plan_path)
        assert engine.progress_path == progress

    def test_unknown_replan_strategy_falls_back(self, plan_path: Path, caplog: pytest.LogCaptureFixture):
        with caplog.at_level("WARNING", logger="iterctl.engine"):
            engine = IterationEngine(LoopConfig(replan=ReplanConfig(strategy="bogus")), plan_path)
        assert engine.replan_strategy == ReplanStrategyType.INCREMENTAL
        assert "unknown replan strategy: bogus" in caplog.text

    def test_requested_replan_runs_once(self, plan_path: Path):
        """A replan requested between iterations runs after the next one only."""
        engine = IterationEngine(make_config(), plan_path)
        engine.begin_iteration(1)
        assert engine.complete_iteration("done", 0).replan is None

        engine.request_replan()
        engine.begin_iteration(2)
        outcome = engine.complete_iteration("done", 0)

        assert outcome.replan is not None
        assert outcome.replan.success
        assert outcome.replan.trigger == TriggerType.MANUAL
        assert [v.version for v in engine.replan.get_versions()] == [1]
        progress = (plan_path.parent / "progress.txt").read_text()
        assert "REPLAN: manual triggered, strategy: incremental" in progress

        engine.begin_iteration(3)
        assert engine.complete_iteration("done", 0).replan is None
        assert len(engine.replan.get_versions()) == 1

    def test_requested_replan_with_none_strategy(self, plan_path: Path):
        original = plan_path.read_bytes()
        engine = IterationEngine(make_config(replan=ReplanConfig(strategy="none")), plan_path)
        engine.request_replan()
        engine.begin_iteration(1)
        assert engine.complete_iteration("done", 0).replan is None
        assert plan_path.read_bytes() == original
        assert not engine.replan.manual_trigger.check(engine.replan.state)
