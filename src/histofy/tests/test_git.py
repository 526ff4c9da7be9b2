"""
SubprocessGit 与真实仓库上的端到端测试
"""
from datetime import datetime, timedelta, timezone

import pytest

from histofy.core.context import HistofyContext
from histofy.core.errors import AlreadyUndoneError, GitError, NetworkError
from histofy.core.executor import MigrationExecutor, MigrationOptions, MigrationState
from histofy.core.git import SubprocessGit, format_git_date
from histofy.core.history import JsonHistoryStorage, OperationHistory
from histofy.core.models import OperationStatus
from histofy.core.operation_manager import OperationManager


@pytest.fixture
def git(git_repo):
    return SubprocessGit(git_repo)


def test_format_git_date():
    assert format_git_date(datetime(2023, 6, 15, 9, 0)) == "2023-06-15 09:00:00"
    aware = datetime(2023, 6, 15, 9, 0, tzinfo=timezone(timedelta(hours=8)))
    assert format_git_date(aware) == f"{int(aware.timestamp())} +0800"


class TestPrimitives:
    """测试基础 git 操作"""

    def test_status(self, git, git_repo):
        status = git.get_status()
        assert status.branch == "main"
        assert status.is_clean
        assert not status.detached

        (git_repo / "file1.txt").write_text("changed\n", encoding="utf-8")
        (git_repo / "new.txt").write_text("new\n", encoding="utf-8")
        status = git.get_status()
        assert not status.is_clean
        assert status.modified == ["file1.txt"]
        assert status.untracked == ["new.txt"]

    def test_untracked_only_is_clean(self, git, git_repo):
        (git_repo / "new.txt").write_text("new\n", encoding="utf-8")
        assert git.get_status().is_clean

    def test_log_range(self, git):
        commits = git.log("HEAD~2..HEAD")
        assert [c.message for c in commits] == ["commit 3", "commit 4"]
        assert commits[0].author_name == "Tester"
        assert commits[0].parents

    def test_log_single(self, git):
        commits = git.log("HEAD")
        assert len(commits) == 1
        assert commits[0].message == "commit 4"

    def test_rev_parse_unknown(self, git):
        with pytest.raises(GitError) as exc:
            git.rev_parse("no-such-ref")
        assert exc.value.command == "rev-parse"

    def test_branches(self, git):
        git.create_branch("histofy-backup-test")
        assert "histofy-backup-test" in git.list_branches()
        git.delete_branch("histofy-backup-test")
        assert "histofy-backup-test" not in git.list_branches()

    def test_commit_with_date(self, git, git_repo):
        (git_repo / "dated.txt").write_text("x\n", encoding="utf-8")
        when = datetime(2022, 2, 2, 22, 22, tzinfo=timezone.utc)
        commit_hash = git.commit_with_date("dated", when=when, author="Other <other@example.com>", add_all=True)

        commit = git.log(commit_hash)[0]
        assert commit.author_date == when
        assert commit.committer_date == when
        assert commit.author == "Other <other@example.com>"

    def test_stash_create_and_apply(self, git, git_repo):
        (git_repo / "file1.txt").write_text("changed\n", encoding="utf-8")
        ref = git.stash_create()
        assert ref
        git.reset_hard("HEAD")
        assert git.get_status().is_clean
        git.stash_apply(ref)
        assert (git_repo / "file1.txt").read_text(encoding="utf-8") == "changed\n"

    def test_stash_create_clean(self, git):
        assert git.stash_create() is None


class TestRebaseWithDates:
    """测试重放并改写日期"""

    def test_rewrites_dates_and_keeps_content(self, git):
        originals = git.log("HEAD~2..HEAD")
        first_untouched = git.log("HEAD~2")[0]
        when = datetime(2023, 6, 15, 9, 0, tzinfo=timezone.utc)
        assignments = {originals[0].hash: when, originals[1].hash: when + timedelta(minutes=1)}

        mapping = git.rebase_with_dates("main", assignments)
        rewritten = git.log("HEAD~2..HEAD")

        assert [mapping[c.hash] for c in originals] == [c.hash for c in rewritten]
        assert [c.author_date for c in rewritten] == [when, when + timedelta(minutes=1)]
        assert [c.committer_date for c in rewritten] == [when, when + timedelta(minutes=1)]
        assert [c.message for c in rewritten] == [c.message for c in originals]
        assert [c.tree for c in rewritten] == [c.tree for c in originals]
        assert git.log("HEAD~2")[0].hash == first_untouched.hash
        assert git.get_status().branch == "main"

    def test_rewrites_root_commit(self, git):
        all_commits = git.log("HEAD~3..HEAD")
        root = git.log("HEAD~3")[0]
        when = datetime(2019, 1, 1, 8, 0, tzinfo=timezone.utc)

        mapping = git.rebase_with_dates("main", {root.hash: when})
        new_root = git.log(mapping[root.hash])[0]

        assert new_root.parents == []
        assert new_root.author_date == when
        assert new_root.tree == root.tree
        assert [c.author_date for c in git.log("HEAD~3..HEAD")] == [c.author_date for c in all_commits]

    def test_root_message_kept_exactly(self, git_repo, git_helpers):
        run = git_helpers.run
        run(git_repo, "checkout", "-q", "--orphan", "lonely")
        run(git_repo, "commit", "-q", "--cleanup=verbatim", "-m", "subject\n\nbody\n\n\n")
        git = SubprocessGit(git_repo)
        root = git.rev_parse("HEAD")
        assert git.log("HEAD")[0].parents == []

        mapping = git.rebase_with_dates("lonely", {root: datetime(2019, 1, 1, 8, 0, tzinfo=timezone.utc)})

        assert git._raw_message(root).endswith("body\n\n\n")
        assert git._raw_message(mapping[root]) == git._raw_message(root)

    def test_rejects_commit_outside_chain(self, git):
        with pytest.raises(GitError):
            git.rebase_with_dates("main", {"0" * 40: datetime(2023, 1, 1)})


class TestConflictsAndPush:

    @pytest.fixture
    def conflicted(self, git_repo, git_helpers):
        """让 side 和 main 修改同一个文件，再把 side 拣选到 main 上"""
        run = git_helpers.run
        run(git_repo, "checkout", "-q", "-b", "side", "HEAD~1")
        git_helpers.commit_file(git_repo, "file3.txt", "side version\n", "side change", "2020-01-05 10:00:00 +0000")
        run(git_repo, "checkout", "-q", "main")
        git_helpers.commit_file(git_repo, "file3.txt", "main version\n", "main change", "2020-01-06 10:00:00 +0000")
        git = SubprocessGit(git_repo)
        git._run(["cherry-pick", "--no-commit", "side"], check=False)
        return git

    def test_resolve_theirs(self, conflicted):
        files = conflicted._conflicted_files()
        assert files == ["file3.txt"]

        conflicted.resolve_conflicts("theirs", files)
        assert conflicted._conflicted_files() == []
        assert (conflicted.repo_path / "file3.txt").read_text(encoding="utf-8") == "side version\n"

    def test_resolve_ours(self, conflicted):
        conflicted.resolve_conflicts("ours", conflicted._conflicted_files())
        assert (conflicted.repo_path / "file3.txt").read_text(encoding="utf-8") == "main version\n"

    def test_abort_rewrite_restores_branch(self, conflicted):
        conflicted.abort_rewrite("main")
        status = conflicted.get_status()
        assert status.branch == "main"
        assert status.is_clean

    def test_push_to_missing_remote_is_not_retryable(self, git, tmp_path):
        with pytest.raises(NetworkError) as exc:
            git.push(str(tmp_path / "missing.git"))
        assert not exc.value.retryable

    def test_push_to_bare_remote(self, git, tmp_path, git_helpers):
        remote = tmp_path / "remote.git"
        git_helpers.run(tmp_path, "init", "-q", "--bare", str(remote))
        git.push(str(remote))
        assert git_helpers.run(remote, "rev-parse", "main") == git.rev_parse("HEAD")


class TestEndToEnd:
    """测试真实仓库上的迁移、回滚和撤销"""

    @pytest.fixture
    def context(self, git_repo, settings, console):
        git = SubprocessGit(git_repo)
        history = OperationHistory(JsonHistoryStorage(settings.history_file), SubprocessGit)
        return HistofyContext(settings=settings, repo_path=git_repo, git=git, history=history, console=console)

    def test_migration_round_trip(self, context):
        git = context.git
        originals = git.log("HEAD~2..HEAD")
        executor = MigrationExecutor(git)
        plan = executor.plan("HEAD~2..HEAD", "2023-06-15", 1, "09:00")
        result = executor.execute(plan, MigrationOptions(operation_id="op-test"))

        assert result.success
        rewritten = git.log("HEAD~2..HEAD")
        for migration, commit in zip(plan.commits, rewritten):
            assert commit.author_date.replace(tzinfo=None) == migration.timestamp
            assert commit.committer_date.replace(tzinfo=None) == migration.timestamp
        assert [c.tree for c in rewritten] == [c.tree for c in originals]
        for original in originals:
            assert git.diff_trees(original.hash, result.commit_map[original.hash]) == []
        assert git.rev_parse(result.backup_branch) == originals[-1].hash

    def test_merge_commit_keeps_all_parents(self, context, git_repo, git_helpers):
        run = git_helpers.run
        run(git_repo, "checkout", "-q", "-b", "side")
        side = git_helpers.commit_file(git_repo, "side.txt", "side\n", "side change", "2020-01-05 10:00:00 +0000")
        run(git_repo, "checkout", "-q", "main")
        git_helpers.commit_file(git_repo, "main.txt", "main\n", "main change", "2020-01-06 10:00:00 +0000")
        run(git_repo, "merge", "-q", "--no-ff", "-m", "merge side", "side")

        git = context.git
        merge = git.log("HEAD")[0]
        assert len(merge.parents) == 2

        executor = MigrationExecutor(git)
        plan = executor.plan("HEAD~2..HEAD", "2023-06-15")
        assert len(plan.commits) == 2
        result = executor.execute(plan)

        assert result.success
        assert result.integrity_warnings == []
        rewritten = git.log("HEAD")[0]
        assert rewritten.hash == result.commit_map[merge.hash]
        assert len(rewritten.parents) == 2
        assert rewritten.parents[0] == result.commit_map[plan.commits[0].original_hash]
        assert rewritten.parents[1] == side
        assert rewritten.tree == merge.tree
        assert rewritten.message == "merge side"

    def test_git_error_mid_rewrite_rolls_back(self, context, monkeypatch):
        git = context.git
        original_head = git.rev_parse("HEAD")
        executor = MigrationExecutor(git)
        plan = executor.plan("HEAD~2..HEAD", "2023-06-15")

        real_replay = git._replay_commit
        calls = {'count': 0}

        def failing_replay(commit, when, on_conflict):
            calls['count'] += 1
            if calls['count'] == 2:
                raise GitError("模拟失败", command="cherry-pick")
            return real_replay(commit, when, on_conflict)

        monkeypatch.setattr(git, "_replay_commit", failing_replay)
        result = executor.execute(plan)

        assert result.rolled_back
        assert result.state == MigrationState.ROLLED_BACK
        assert git.rev_parse("HEAD") == git.rev_parse(result.backup_branch) == original_head
        assert git.get_status().branch == "main"
        assert git.get_status().is_clean

    def test_migrate_then_undo_restores_hashes(self, context):
        git = context.git
        before = [c.hash for c in git.log("HEAD~3..HEAD")]
        manager = OperationManager(context)
        executor = MigrationExecutor(git)

        def migrate(operation_id):
            plan = executor.plan("HEAD~2..HEAD", "2023-06-15")
            return executor.execute(plan, MigrationOptions(operation_id=operation_id))

        op_result = manager.execute(
            "migrate",
            migrate,
            undo_data_builder=lambda r: {'backupBranch': r.backup_branch, 'newHead': r.new_head},
        )
        assert op_result.success
        assert [c.hash for c in git.log("HEAD~3..HEAD")] != before

        undo = context.history.undo_operation(op_result.operation_id)
        assert undo.success
        assert [c.hash for c in git.log("HEAD~3..HEAD")] == before
        assert context.history.get_operation(op_result.operation_id).status == OperationStatus.UNDONE

        with pytest.raises(AlreadyUndoneError) as exc:
            context.history.undo_operation(op_result.operation_id)
        assert "already undone" in str(exc.value)
        assert [c.hash for c in git.log("HEAD~3..HEAD")] == before
