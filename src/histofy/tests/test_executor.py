"""
迁移执行器状态机测试（使用 FakeGit）
"""
import signal
from datetime import datetime

import pytest

from histofy.core.errors import GitError, ValidationError
from histofy.core.executor import MigrationExecutor, MigrationOptions, MigrationState, backup_branch_name


@pytest.fixture
def executor(fake_git):
    return MigrationExecutor(fake_git)


def plan_all(executor, **kwargs):
    params = dict(target_date="2023-06-15", spread_days=1, start_time="09:00")
    params.update(kwargs)
    return executor.plan("HEAD~2..HEAD", **params)


class TestPlan:

    def test_plan_resolves_range(self, executor, fake_git):
        plan = plan_all(executor)
        assert [c.original_hash for c in plan.commits] == fake_git.chain()[1:]
        assert plan.rev_range == "HEAD~2..HEAD"

    def test_plan_bad_range(self, executor):
        with pytest.raises(ValidationError):
            executor.plan("HEAD~9..HEAD", "2023-06-15")

    def test_plan_empty_range(self, executor):
        with pytest.raises(ValidationError):
            executor.plan("HEAD..HEAD", "2023-06-15")


class TestExecute:
    """测试正常迁移流程"""

    def test_successful_migration(self, executor, fake_git):
        original = fake_git.head
        plan = plan_all(executor)
        result = executor.execute(plan, MigrationOptions(operation_id="op-1"))

        assert result.success
        assert result.state == MigrationState.COMPLETED
        assert result.migrated_count == 2
        assert result.original_head == original
        assert result.new_head == fake_git.head != original
        assert result.backup_branch.startswith("histofy-backup-op-1-")
        assert fake_git.refs[result.backup_branch] == original
        assert executor.transitions == [
            MigrationState.PLANNING,
            MigrationState.BACKUP_CREATED,
            MigrationState.REWRITING,
            MigrationState.VALIDATING,
            MigrationState.COMPLETED,
        ]

        new_dates = [fake_git.commits[h].author_date for h in fake_git.chain()[1:]]
        assert new_dates == [datetime(2023, 6, 15, 9, 0), datetime(2023, 6, 15, 9, 1)]

    def test_without_backup(self, executor, fake_git):
        result = executor.execute(plan_all(executor), MigrationOptions(create_backup=False))
        assert result.success
        assert result.backup_branch is None
        assert not any(c.startswith("create_branch") for c in fake_git.calls)

    def test_integrity_warning_is_not_fatal(self, executor, fake_git):
        fake_git.tree_mismatch.add(fake_git.head)
        result = executor.execute(plan_all(executor))
        assert result.success
        assert len(result.integrity_warnings) == 1

    def test_progress_callback_errors_are_ignored(self, fake_git):
        messages = []

        def progress(message, percent):
            messages.append((message, percent))
            raise RuntimeError("boom")

        executor = MigrationExecutor(fake_git, progress=progress)
        result = executor.execute(plan_all(executor))
        assert result.success
        assert messages[-1][1] == 100

    def test_backup_name_format(self):
        name = backup_branch_name("op-42")
        assert name.startswith("histofy-backup-op-42-")
        assert len(name.rsplit("-", 1)[1]) == 14


class TestPreChecks:
    """测试执行前检查"""

    def test_dirty_tree(self, executor, fake_git):
        plan = plan_all(executor)
        fake_git.clean = False
        with pytest.raises(ValidationError):
            executor.execute(plan)
        assert fake_git.calls == []

    def test_detached_head(self, executor, fake_git):
        plan = plan_all(executor)
        fake_git.refs["HEAD"] = fake_git.head
        fake_git.branch = "HEAD"
        with pytest.raises(ValidationError):
            executor.execute(plan)

    def test_backup_failure(self, executor, fake_git):
        plan = plan_all(executor)
        fake_git.fail_create_branch = True
        with pytest.raises(GitError):
            executor.execute(plan)
        assert "rebase" not in fake_git.calls

    def test_invalid_auto_resolve(self):
        with pytest.raises(ValidationError):
            MigrationOptions(auto_resolve="mine")


class TestConflicts:
    """测试冲突处理"""

    def test_auto_resolve_theirs(self, executor, fake_git):
        fake_git.conflict_on.add(fake_git.head)
        result = executor.execute(plan_all(executor), MigrationOptions(auto_resolve="theirs"))

        assert result.success
        assert result.conflicts_encountered
        assert fake_git.resolved == [("theirs", ("conflict.txt",))]
        assert MigrationState.CONFLICT in executor.transitions

    def test_conflict_without_handler_aborts(self, executor, fake_git):
        original = fake_git.head
        fake_git.conflict_on.add(original)
        result = executor.execute(plan_all(executor))

        assert not result.success
        assert result.aborted
        assert not result.rolled_back
        assert result.state == MigrationState.ABORTED
        assert fake_git.head == original
        assert result.backup_branch in fake_git.refs

    def test_manual_handler_continues(self, executor, fake_git):
        fake_git.conflict_on.add(fake_git.head)
        seen = []
        options = MigrationOptions(conflict_handler=lambda commit, files: seen.append(files) or True)
        result = executor.execute(plan_all(executor), options)

        assert result.success
        assert result.conflicts_encountered
        assert seen == [["conflict.txt"]]

    def test_manual_handler_aborts(self, executor, fake_git):
        fake_git.conflict_on.add(fake_git.head)
        result = executor.execute(plan_all(executor), MigrationOptions(conflict_handler=lambda c, f: False))
        assert result.aborted
        assert result.state == MigrationState.ABORTED


class TestRollback:
    """测试失败回滚"""

    def test_git_error_rolls_back(self, executor, fake_git):
        original = fake_git.head
        fake_git.fail_on.add(original)
        result = executor.execute(plan_all(executor))

        assert not result.success
        assert result.rolled_back
        assert result.state == MigrationState.ROLLED_BACK
        assert fake_git.head == fake_git.refs[result.backup_branch] == original
        assert f"reset {result.backup_branch}" in fake_git.calls

    def test_rollback_without_backup_uses_original_head(self, executor, fake_git):
        original = fake_git.head
        fake_git.fail_on.add(original)
        result = executor.execute(plan_all(executor), MigrationOptions(create_backup=False))
        assert result.rolled_back
        assert f"reset {original}" in fake_git.calls

    def test_rollback_failure(self, executor, fake_git):
        fake_git.fail_on.add(fake_git.head)
        fake_git.fail_reset = True
        result = executor.execute(plan_all(executor))

        assert result.rollback_failed
        assert result.state == MigrationState.ROLLBACK_FAILED
        assert result.backup_branch in fake_git.refs

    def test_rollback_disabled(self, executor, fake_git):
        fake_git.fail_on.add(fake_git.head)
        result = executor.execute(plan_all(executor), MigrationOptions(rollback_on_failure=False))

        assert result.aborted
        assert not result.rolled_back
        assert result.state == MigrationState.ABORTED
        assert not any(c.startswith("reset") for c in fake_git.calls)

    @pytest.mark.skipif(not hasattr(signal, "SIGINT"), reason="不支持 SIGINT")
    def test_signal_triggers_rollback(self, executor, fake_git):
        original = fake_git.head
        fake_git.interrupt_on.add(original)
        previous = signal.getsignal(signal.SIGINT)
        result = executor.execute(plan_all(executor))

        assert result.cancelled
        assert result.rolled_back
        assert fake_git.head == original
        assert signal.getsignal(signal.SIGINT) is previous
