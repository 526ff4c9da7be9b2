"""
测试公共夹具：内存中的 FakeGit 和真实的临时 git 仓库
"""
import hashlib
import io
import os
import shutil
import signal
import subprocess
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from rich.console import Console

from histofy.config import Settings
from histofy.core.config_store import YamlConfigStore
from histofy.core.context import HistofyContext
from histofy.core.errors import CancellationError, CancelReason, GitError, NetworkError
from histofy.core.history import MemoryHistoryStorage, OperationHistory
from histofy.core.models import CommitInfo, RepoStatus

GIT_AVAILABLE = shutil.which("git") is not None


class FakeGit:
    """按 GitPrimitives 接口在内存中模拟一条线性历史"""

    def __init__(self, repo_path: Path, commit_count: int = 3):
        self.repo_path = Path(repo_path)
        self.branch = "main"
        self.commits: Dict[str, CommitInfo] = {}
        self.refs: Dict[str, Optional[str]] = {"main": None}
        self.clean = True
        self.calls: List[str] = []
        self.stash_applied: List[str] = []
        self.resolved: List[tuple] = []
        # 故障注入
        self.conflict_on = set()
        self.fail_on = set()
        self.interrupt_on = set()
        self.tree_mismatch = set()
        self.fail_create_branch = False
        self.fail_reset = False
        self.push_errors: List[NetworkError] = []
        self._counter = 0

        base = datetime(2020, 1, 1, 10, 0)
        for index in range(commit_count):
            self._add_commit(f"commit {index + 1}", base + timedelta(days=index), tree=f"tree-{index + 1}")

    def _next_hash(self) -> str:
        self._counter += 1
        return hashlib.sha1(f"fake-{self._counter}".encode()).hexdigest()

    def _add_commit(self, message: str, when: datetime, tree: Optional[str] = None, author="Tester <t@example.com>") -> str:
        parent = self.refs[self.branch]
        name, email = author.split(" <")
        commit_hash = self._next_hash()
        self.commits[commit_hash] = CommitInfo(
            hash=commit_hash,
            tree=tree or f"tree-{commit_hash[:6]}",
            parents=[parent] if parent else [],
            author_name=name,
            author_email=email.rstrip(">"),
            author_date=when,
            committer_name=name,
            committer_email=email.rstrip(">"),
            committer_date=when,
            message=message,
        )
        self.refs[self.branch] = commit_hash
        return commit_hash

    @property
    def head(self) -> Optional[str]:
        return self.refs[self.branch]

    def chain(self, tip: Optional[str] = None) -> List[str]:
        """从根到 tip 的第一父链"""
        result = []
        current = tip or self.head
        while current:
            result.append(current)
            parents = self.commits[current].parents
            current = parents[0] if parents else None
        return list(reversed(result))

    def is_repository(self) -> bool:
        return True

    def get_status(self) -> RepoStatus:
        return RepoStatus(
            branch=self.branch,
            head=self.head,
            is_clean=self.clean,
            modified=[] if self.clean else ["dirty.txt"],
        )

    def rev_parse(self, ref: str) -> str:
        if ref == "HEAD":
            if self.head is None:
                raise GitError("HEAD 不存在", command="rev-parse")
            return self.head
        if ref.startswith("HEAD~"):
            chain = self.chain()
            back = int(ref[5:])
            if back >= len(chain):
                raise GitError(f"未知版本 {ref}", command="rev-parse")
            return chain[-1 - back]
        if ref in self.refs and self.refs[ref]:
            return self.refs[ref]
        if ref in self.commits:
            return ref
        raise GitError(f"未知版本 {ref}", command="rev-parse")

    def log(self, rev_range: str) -> List[CommitInfo]:
        if ".." in rev_range:
            start, end = rev_range.split("..", 1)
            tip = self.rev_parse(end or "HEAD")
            chain = self.chain(tip)
            base = self.rev_parse(start)
            chain = chain[chain.index(base) + 1:] if base in chain else chain
        else:
            chain = [self.rev_parse(rev_range)]
        return [self.commits[h] for h in chain]

    def list_branches(self) -> List[str]:
        return [name for name, ref in self.refs.items() if ref]

    def create_branch(self, name: str, start_point: str = "HEAD") -> None:
        self.calls.append(f"create_branch {name}")
        if self.fail_create_branch:
            raise GitError("无法创建分支", command="branch")
        self.refs[name] = self.rev_parse(start_point)

    def delete_branch(self, name: str) -> None:
        self.refs.pop(name, None)

    def checkout(self, ref: str, force: bool = False) -> None:
        self.calls.append(f"checkout {ref}")
        if ref in self.refs:
            self.branch = ref

    def commit_with_date(self, message, when=None, author=None, add_all=False, allow_empty=False) -> str:
        self.calls.append("commit")
        self.clean = True
        return self._add_commit(message, when or datetime.now(), author=author or "Tester <t@example.com>")

    def rebase_with_dates(self, branch, assignments, on_conflict=None, on_progress=None) -> Dict[str, str]:
        self.calls.append("rebase")
        chain = self.chain()
        start = min(chain.index(h) for h in assignments)
        new_parent = chain[start - 1] if start > 0 else None
        mapping = {}
        replay = chain[start:]
        for index, old_hash in enumerate(replay):
            old = self.commits[old_hash]
            if old_hash in self.interrupt_on:
                os.kill(os.getpid(), signal.SIGINT)
            if old_hash in self.fail_on:
                raise GitError(f"cherry-pick {old_hash[:8]} 失败", command="cherry-pick")
            if old_hash in self.conflict_on:
                if on_conflict is None or not on_conflict(old, ["conflict.txt"]):
                    raise CancellationError(CancelReason.CONFLICT_ABORTED, "冲突已放弃")
            when = assignments.get(old_hash)
            new_hash = self._next_hash()
            self.commits[new_hash] = CommitInfo(
                hash=new_hash,
                tree=old.tree + "-changed" if old_hash in self.tree_mismatch else old.tree,
                parents=[new_parent] if new_parent else [],
                author_name=old.author_name,
                author_email=old.author_email,
                author_date=when or old.author_date,
                committer_name=old.committer_name,
                committer_email=old.committer_email,
                committer_date=when or old.committer_date,
                message=old.message,
            )
            mapping[old_hash] = new_hash
            new_parent = new_hash
            if on_progress:
                on_progress(index + 1, len(replay), old)
        self.refs[branch] = new_parent
        return mapping

    def resolve_conflicts(self, strategy: str, files: List[str]) -> None:
        self.resolved.append((strategy, tuple(files)))

    def abort_rewrite(self, branch: str) -> None:
        self.calls.append(f"abort {branch}")
        self.branch = branch

    def reset_hard(self, ref: str) -> None:
        self.calls.append(f"reset {ref}")
        if self.fail_reset:
            raise GitError("reset 失败", command="reset")
        self.refs[self.branch] = self.rev_parse(ref)
        self.clean = True

    def diff_trees(self, a: str, b: str) -> List[str]:
        return [] if self.commits[a].tree == self.commits[b].tree else ["file.txt"]

    def stash_create(self) -> Optional[str]:
        return None if self.clean else "stash-ref"

    def stash_apply(self, ref: str) -> None:
        self.stash_applied.append(ref)
        self.clean = False

    def push(self, remote="origin", branch=None, force_with_lease=False) -> None:
        self.calls.append(f"push {remote}")
        if self.push_errors:
            raise self.push_errors.pop(0)


@pytest.fixture
def settings(tmp_path):
    """指向临时目录的配置"""
    return Settings(home=tmp_path / "home")


@pytest.fixture
def repo_dir(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def fake_git(repo_dir):
    return FakeGit(repo_dir)


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=160)


@pytest.fixture
def fake_context(settings, repo_dir, fake_git, console):
    """使用 FakeGit 和内存历史的上下文"""
    config_store = YamlConfigStore(settings.config_file)
    history = OperationHistory(MemoryHistoryStorage(), lambda path: fake_git, config_store)
    return HistofyContext(
        settings=settings,
        repo_path=repo_dir,
        git=fake_git,
        history=history,
        config_store=config_store,
        console=console,
    )


def run_git(repo: Path, *args: str, env: Optional[Dict[str, str]] = None) -> str:
    full_env = os.environ.copy()
    if env:
        full_env.update(env)
    result = subprocess.run(
        ["git", *args], cwd=str(repo), env=full_env, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def _commit_file(repo: Path, name: str, content: str, message: str, when: str) -> str:
    (repo / name).write_text(content, encoding="utf-8")
    run_git(repo, "add", name)
    env = {"GIT_AUTHOR_DATE": when, "GIT_COMMITTER_DATE": when}
    run_git(repo, "commit", "-q", "-m", message, env=env)
    return run_git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path):
    """带 4 个提交的真实 git 仓库"""
    if not GIT_AVAILABLE:
        pytest.skip("git 不可用")
    repo = tmp_path / "real-repo"
    repo.mkdir()
    run_git(repo, "init", "-q")
    run_git(repo, "checkout", "-q", "-b", "main")
    run_git(repo, "config", "user.name", "Tester")
    run_git(repo, "config", "user.email", "tester@example.com")
    run_git(repo, "config", "commit.gpgsign", "false")
    for index in range(4):
        _commit_file(
            repo,
            f"file{index + 1}.txt",
            f"content {index + 1}\n",
            f"commit {index + 1}",
            f"2020-01-0{index + 1} 10:00:00 +0000",
        )
    return repo


@pytest.fixture
def git_helpers():
    """暴露给测试的 git 辅助函数"""
    class Helpers:
        run = staticmethod(run_git)
        commit_file = staticmethod(_commit_file)
    return Helpers
