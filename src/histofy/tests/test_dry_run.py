"""
预演管理器测试
"""
import io
import json

import pytest
from rich.console import Console

from histofy.core.dry_run import DryRunManager, format_duration
from histofy.core.models import CommitMigration, MigrationPlan, Operation


def make_plan(count, warnings=None):
    commits = [
        CommitMigration(
            original_hash=f"{index:040x}",
            original_date="2020-01-01T10:00:00",
            new_date="2023-06-15",
            new_time=f"09:{index:02d}",
            author="Tester <t@example.com>",
            message=f"commit {index + 1}",
        )
        for index in range(count)
    ]
    return MigrationPlan(
        strategy="rebase",
        target_date="2023-06-15",
        spread_days=1,
        start_time="09:00",
        commits=commits,
        warnings=list(warnings or []),
    )


class TestFormatDuration:

    @pytest.mark.parametrize("seconds,expected", [
        (5, "5s"),
        (60, "1m"),
        (125, "2m 5s"),
        (3600, "1h"),
        (3725, "1h 2m"),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestDryRunManager:
    """测试操作累积和汇总"""

    def test_add_operation_assigns_ids(self):
        dry_run = DryRunManager()
        assert dry_run.add_operation("a", "first") == 1
        assert dry_run.add_operation("b", "second", estimated_duration=4) == 2
        assert dry_run.estimated_time == 4

    def test_invalid_risk_level(self):
        with pytest.raises(ValueError):
            DryRunManager().add_operation("a", "bad", risk_level="extreme")

    def test_summary_counts(self):
        dry_run = DryRunManager()
        dry_run.add_operation("a", "low", git_command="add", affected_files=["x.txt", "y.txt"])
        dry_run.add_operation("b", "medium", risk_level="medium", reversible=False, affected_files=["x.txt"])
        dry_run.add_operation("c", "high", risk_level="high", git_command="rebase")
        dry_run.add_warning("注意", "warning")

        summary = dry_run.generate_summary()
        assert summary['totalOperations'] == 3
        assert summary['affectedFilesCount'] == 2
        assert summary['gitOperationsCount'] == 2
        assert summary['riskDistribution'] == {'low': 1, 'medium': 1, 'high': 1}
        assert summary['reversibleOperations'] == 2
        assert summary['irreversibleOperations'] == 1
        assert summary['warningsCount'] == 1
        assert summary['operations'][0]['riskLevel'] == "low"

    def test_summary_is_idempotent(self):
        dry_run = DryRunManager.for_commit_operation("msg", push=True)
        first = dry_run.generate_summary()
        second = dry_run.generate_summary()
        assert first == second

    def test_display_preview_returns_summary(self):
        dry_run = DryRunManager.for_migration_operation(make_plan(3))
        output = io.StringIO()
        summary = dry_run.display_preview(Console(file=output, width=160), show_git_commands=True)

        assert summary == dry_run.generate_summary()
        assert "DRY RUN" in output.getvalue()

    def test_display_preview_truncates(self):
        dry_run = DryRunManager.for_migration_operation(make_plan(30))
        output = io.StringIO()
        dry_run.display_preview(Console(file=output, width=160), max_operations=5)
        assert "还有" in output.getvalue()

    def test_clear(self):
        dry_run = DryRunManager.for_commit_operation("msg", push=True)
        dry_run.clear()
        summary = dry_run.generate_summary()
        assert summary['totalOperations'] == 0
        assert summary['warningsCount'] == 0
        assert summary['estimatedTime'] == 0

    def test_export_summary(self, tmp_path):
        dry_run = DryRunManager.for_batch_operation([{'message': 'a'}, {'message': 'b'}])
        path = tmp_path / "out" / "summary.json"
        dry_run.export_summary(path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data['totalOperations'] == 3
        assert data['version'] == "1.0.0"
        assert 'exportedAt' in data
        for key in ("riskDistribution", "operations", "warnings", "affectedFiles", "gitOperations"):
            assert key in data


class TestFactories:
    """测试各类操作的预演构建"""

    def test_commit_with_push_is_irreversible(self):
        dry_run = DryRunManager.for_commit_operation("msg", date="2023-01-01", add_all=True, push=True)
        push = dry_run.operations[-1]

        assert push.type == "git_push"
        assert push.risk_level == "medium"
        assert not push.reversible
        assert any("推送" in w['message'] for w in dry_run.warnings)

    def test_commit_without_push(self):
        dry_run = DryRunManager.for_commit_operation("msg")
        assert [op.type for op in dry_run.operations] == ["git_add", "git_commit"]
        assert dry_run.warnings == []

    def test_migration_operations(self):
        dry_run = DryRunManager.for_migration_operation(make_plan(3, warnings=["spread exceeds commit count"]))
        types = [op.type for op in dry_run.operations]

        assert types == ["git_backup", "commit_migration", "commit_migration", "commit_migration", "cleanup"]
        rewrites = [op for op in dry_run.operations if op.type == "commit_migration"]
        assert all(op.risk_level == "high" and op.reversible for op in rewrites)
        assert all(op.git_command == "rebase" for op in rewrites)
        assert any("spread exceeds" in w['message'] for w in dry_run.warnings)

    def test_migration_without_backup(self):
        dry_run = DryRunManager.for_migration_operation(make_plan(1), create_backup=False)
        assert dry_run.operations[0].type == "commit_migration"

    def test_large_migration_warning(self):
        small = DryRunManager.for_migration_operation(make_plan(10))
        large = DryRunManager.for_migration_operation(make_plan(11))
        assert len(large.warnings) == len(small.warnings) + 1

    def test_config_update(self):
        dry_run = DryRunManager.for_config_operation("git.defaultTime", "08:15", config_file="/tmp/config.yaml")
        assert [op.type for op in dry_run.operations] == ["config_update"]
        assert dry_run.operations[0].details == {'key': "git.defaultTime", 'value': "08:15"}
        assert dry_run.affected_files == ["/tmp/config.yaml"]

    def test_batch_warnings(self):
        entries = [{'message': f"m{i}"} for i in range(51)]
        dry_run = DryRunManager.for_batch_operation(entries, continue_on_error=True)
        assert dry_run.generate_summary()['totalOperations'] == 52
        assert len(dry_run.warnings) == 2

    def test_batch_empty(self):
        assert DryRunManager.for_batch_operation([]).operations == []

    def test_undo_preview(self):
        migrate = Operation(id="op-1", type="migrate", backup_branch="histofy-backup-op-1-x")
        commit = Operation(id="op-2", type="commit", undo_data={'parentHash': "a" * 40})
        dry_run = DryRunManager.for_undo_operation([migrate, commit])

        assert [op.git_args[-1] for op in dry_run.operations] == ["histofy-backup-op-1-x", "a" * 40]
        assert all(not op.reversible for op in dry_run.operations)
