"""Tests for plan backups and restore."""

from __future__ import annotations

from pathlib import Path

import pytest

from iterctl.errors import BackupError, InvalidVersionError
from iterctl.plan import Plan
from iterctl.replan import PlanVersioner, calculate_plan_hash, calculate_plans_hash


@pytest.fixture
def plan_path(tmp_path: Path) -> Path:
    path = tmp_path / "plan.json"
    path.write_text('[{"id": 1, "description": "A"}]')
    return path


class TestHashes:
    def test_plan_hash_is_stable(self, plan_path: Path):
        assert calculate_plan_hash(plan_path) == calculate_plan_hash(plan_path)
        assert len(calculate_plan_hash(plan_path)) == 64

    def test_plans_hash_ignores_object_identity(self):
        a = [Plan(id=1, description="A", steps=["x"])]
        b = [Plan(id=1, description="A", steps=["x"])]
        assert calculate_plans_hash(a) == calculate_plans_hash(b)
        assert calculate_plans_hash(a) != calculate_plans_hash([Plan(id=1, description="B")])


class TestPlanVersioner:
    """Tests for PlanVersioner."""

    def test_backup_naming(self, plan_path: Path):
        versioner = PlanVersioner(plan_path)
        path = versioner.create_backup("manual")
        assert path == plan_path.parent / "plan.bak.1.json"
        assert path.read_bytes() == plan_path.read_bytes()

        version = versioner.latest()
        assert version.version == 1
        assert version.trigger == "manual"
        assert version.content_hash == calculate_plan_hash(plan_path)

    def test_backup_is_idempotent(self, plan_path: Path):
        """Backing up unchanged content returns the existing backup."""
        versioner = PlanVersioner(plan_path)
        first = versioner.create_backup()
        second = versioner.create_backup()
        assert first == second
        assert len(versioner.versions) == 1
        assert not (plan_path.parent / "plan.bak.2.json").exists()

    def test_new_content_gets_next_version(self, plan_path: Path):
        versioner = PlanVersioner(plan_path)
        versioner.create_backup()
        plan_path.write_text('[{"id": 1, "description": "B"}]')
        path = versioner.create_backup()
        assert path.name == "plan.bak.2.json"
        assert [v.version for v in versioner.versions] == [1, 2]

    def test_reverting_content_reuses_backup(self, plan_path: Path):
        versioner = PlanVersioner(plan_path)
        original = plan_path.read_text()
        first = versioner.create_backup()
        plan_path.write_text("[]")
        versioner.create_backup()
        plan_path.write_text(original)
        assert versioner.create_backup() == first
        assert len(versioner.versions) == 2

    def test_restore_is_byte_identical(self, plan_path: Path):
        original = plan_path.read_bytes()
        versioner = PlanVersioner(plan_path)
        versioner.create_backup()
        plan_path.write_text('[{"id": 2, "description": "changed"}]')

        versioner.restore_version(1)
        assert plan_path.read_bytes() == original

    @pytest.mark.parametrize("version", [0, 2, -1])
    def test_restore_out_of_range(self, plan_path: Path, version: int):
        versioner = PlanVersioner(plan_path)
        versioner.create_backup()
        with pytest.raises(InvalidVersionError) as exc_info:
            versioner.restore_version(version)
        assert exc_info.value.version == version

    def test_restore_without_backups(self, plan_path: Path):
        with pytest.raises(InvalidVersionError):
            PlanVersioner(plan_path).restore_version(1)

    def test_backup_of_missing_plan(self, tmp_path: Path):
        with pytest.raises(BackupError):
            PlanVersioner(tmp_path / "missing.json").create_backup()

    def test_restore_with_deleted_backup(self, plan_path: Path):
        versioner = PlanVersioner(plan_path)
        versioner.create_backup().unlink()
        with pytest.raises(BackupError):
            versioner.restore_version(1)

    def test_discover_backups(self, plan_path: Path):
        """A fresh versioner picks up backups left by an earlier run."""
        first = PlanVersioner(plan_path)
        first.create_backup()
        plan_path.write_text("[]")
        first.create_backup()

        second = PlanVersioner(plan_path)
        assert second.discover_backups() == 2
        assert [v.version for v in second.versions] == [1, 2]

        # Known content is not backed up again
        assert second.create_backup() == plan_path.parent / "plan.bak.2.json"

    def test_discover_ignores_gaps(self, plan_path: Path):
        (plan_path.parent / "plan.bak.1.json").write_text("[]")
        (plan_path.parent / "plan.bak.3.json").write_text("[]")
        (plan_path.parent / "other.bak.2.json").write_text("[]")

        versioner = PlanVersioner(plan_path)
        assert versioner.discover_backups() == 1
        assert versioner.create_backup().name == "plan.bak.2.json"

    def test_backup_over_stray_file_warns(self, plan_path: Path, caplog: pytest.LogCaptureFixture):
        """A leftover file beyond the sequence is replaced with a warning."""
        (plan_path.parent / "plan.bak.2.json").write_text("stale")
        versioner = PlanVersioner(plan_path)
        assert versioner.discover_backups() == 0

        versioner.create_backup()
        plan_path.write_text('[{"id": 1, "description": "B"}]')
        with caplog.at_level("WARNING", logger="iterctl.replan.versioning"):
            path = versioner.create_backup()

        assert path.name == "plan.bak.2.json"
        assert path.read_bytes() == plan_path.read_bytes()
        assert "Overwriting unrecorded backup file" in caplog.text

    def test_version_to_dict(self, plan_path: Path):
        versioner = PlanVersioner(plan_path)
        versioner.create_backup("test_failure")
        data = versioner.latest().to_dict()
        assert data["version"] == 1
        assert data["trigger"] == "test_failure"
        assert data["path"].endswith("plan.bak.1.json")
        assert "hash" in data
