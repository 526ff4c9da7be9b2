"""
git 基础操作模块

GitPrimitives 是核心逻辑依赖的能力接口，SubprocessGit 通过调用 git 可执行文件实现它
"""
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from loguru import logger

from .errors import CancellationError, CancelReason, GitError, NetworkError
from .models import CommitInfo, RepoStatus

# 冲突回调: (提交, 冲突文件) -> 是否继续
ConflictCallback = Callable[[CommitInfo, List[str]], bool]
# 进度回调: (已完成数, 总数, 当前提交)
StepCallback = Callable[[int, int, CommitInfo], None]

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = _FIELD_SEP.join(
    ["%H", "%T", "%P", "%an", "%ae", "%aI", "%cn", "%ce", "%cI", "%B"]
) + _RECORD_SEP

# 推送失败时可重试的错误特征
_RETRYABLE_PUSH_ERRORS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "connection reset",
    "operation timed out",
    "the remote end hung up unexpectedly",
    "early eof",
    "network is unreachable",
)


class GitPrimitives(Protocol):
    """核心逻辑使用的 git 能力接口"""

    repo_path: Path

    def is_repository(self) -> bool: ...

    def get_status(self) -> RepoStatus: ...

    def rev_parse(self, ref: str) -> str: ...

    def log(self, rev_range: str) -> List[CommitInfo]: ...

    def list_branches(self) -> List[str]: ...

    def create_branch(self, name: str, start_point: str = "HEAD") -> None: ...

    def delete_branch(self, name: str) -> None: ...

    def checkout(self, ref: str, force: bool = False) -> None: ...

    def commit_with_date(
        self,
        message: str,
        when: Optional[datetime] = None,
        author: Optional[str] = None,
        add_all: bool = False,
        allow_empty: bool = False,
    ) -> str: ...

    def rebase_with_dates(
        self,
        branch: str,
        assignments: Dict[str, datetime],
        on_conflict: Optional[ConflictCallback] = None,
        on_progress: Optional[StepCallback] = None,
    ) -> Dict[str, str]: ...

    def resolve_conflicts(self, strategy: str, files: List[str]) -> None: ...

    def abort_rewrite(self, branch: str) -> None: ...

    def reset_hard(self, ref: str) -> None: ...

    def diff_trees(self, a: str, b: str) -> List[str]: ...

    def stash_create(self) -> Optional[str]: ...

    def stash_apply(self, ref: str) -> None: ...

    def push(self, remote: str = "origin", branch: Optional[str] = None,
             force_with_lease: bool = False) -> None: ...


def format_git_date(dt: datetime) -> str:
    """
    转换为 git 可识别的日期

    带时区的时间使用 git 内部格式 "<unix秒> <+HHMM>"，无时区的时间按本地时间处理
    """
    if dt.tzinfo is None:
        return dt.strftime("%Y-%m-%d %H:%M:%S")

    offset = dt.utcoffset()
    total_minutes = int(offset.total_seconds() // 60) if offset else 0
    sign = "+" if total_minutes >= 0 else "-"
    total_minutes = abs(total_minutes)
    return f"{int(dt.timestamp())} {sign}{total_minutes // 60:02d}{total_minutes % 60:02d}"


def parse_log_output(output: str) -> List[CommitInfo]:
    """解析 _LOG_FORMAT 格式的 git log 输出"""
    commits = []
    for chunk in output.split(_RECORD_SEP):
        chunk = chunk.lstrip("\n")
        if not chunk.strip():
            continue
        fields = chunk.split(_FIELD_SEP, 9)
        if len(fields) < 10:
            raise GitError(f"无法解析 git log 输出: {chunk[:80]!r}", command="log")
        (commit_hash, tree, parents, author_name, author_email, author_date,
         committer_name, committer_email, committer_date, message) = fields
        commits.append(CommitInfo(
            hash=commit_hash,
            tree=tree,
            parents=parents.split(),
            author_name=author_name,
            author_email=author_email,
            author_date=datetime.fromisoformat(author_date),
            committer_name=committer_name,
            committer_email=committer_email,
            committer_date=datetime.fromisoformat(committer_date),
            message=message.rstrip("\n"),
        ))
    return commits


class SubprocessGit:
    """通过 git 子进程实现 GitPrimitives"""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path).resolve()

    def _run(
        self,
        args: List[str],
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        logger.debug(f"git {' '.join(args)}")
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(self.repo_path),
                env=full_env,
                input=input,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise GitError(f"无法执行 git {args[0]}: {e}", command=args[0]) from e

        if check and result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            raise GitError(f"git {args[0]} 失败: {stderr}", command=args[0], stderr=stderr)
        return result

    def _lines(self, args: List[str]) -> List[str]:
        return [line for line in self._run(args).stdout.splitlines() if line.strip()]

    def is_repository(self) -> bool:
        if not self.repo_path.is_dir():
            return False
        return self._run(["rev-parse", "--git-dir"], check=False).returncode == 0

    def get_status(self) -> RepoStatus:
        branch_result = self._run(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        branch = branch_result.stdout.strip() if branch_result.returncode == 0 else "HEAD"

        head_result = self._run(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        head = head_result.stdout.strip() if head_result.returncode == 0 else None

        status = RepoStatus(branch=branch, head=head)
        for line in self._run(["status", "--porcelain", "--untracked-files=all"]).stdout.splitlines():
            if len(line) < 4:
                continue
            code, path = line[:2], line[3:]
            if code == "??":
                status.untracked.append(path)
                continue
            if code[0] not in " ?":
                status.staged.append(path)
            if code[1] not in " ?":
                status.modified.append(path)

        # 未跟踪文件不受 reset --hard 影响，不计入脏状态
        status.is_clean = not status.staged and not status.modified
        return status

    def rev_parse(self, ref: str) -> str:
        return self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"]).stdout.strip()

    def log(self, rev_range: str) -> List[CommitInfo]:
        """返回范围内的提交（从旧到新，仅第一父链）"""
        if ".." in rev_range:
            args = ["log", "--first-parent", "--reverse", f"--format={_LOG_FORMAT}", rev_range]
        else:
            args = ["log", "-1", f"--format={_LOG_FORMAT}", rev_range]
        return parse_log_output(self._run(args).stdout)

    def list_branches(self) -> List[str]:
        return self._lines(["for-each-ref", "--format=%(refname:short)", "refs/heads/"])

    def create_branch(self, name: str, start_point: str = "HEAD") -> None:
        self._run(["branch", name, start_point])

    def delete_branch(self, name: str) -> None:
        self._run(["branch", "-D", name])

    def checkout(self, ref: str, force: bool = False) -> None:
        args = ["checkout", "-q"]
        if force:
            args.append("-f")
        self._run(args + [ref])

    def commit_with_date(
        self,
        message: str,
        when: Optional[datetime] = None,
        author: Optional[str] = None,
        add_all: bool = False,
        allow_empty: bool = False,
    ) -> str:
        if add_all:
            self._run(["add", "-A"])

        env = {}
        if when is not None:
            git_date = format_git_date(when)
            env = {"GIT_AUTHOR_DATE": git_date, "GIT_COMMITTER_DATE": git_date}

        args = ["commit", "-q", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        if author:
            args += ["--author", author]
        self._run(args, env=env)
        return self.rev_parse("HEAD")

    def rebase_with_dates(
        self,
        branch: str,
        assignments: Dict[str, datetime],
        on_conflict: Optional[ConflictCallback] = None,
        on_progress: Optional[StepCallback] = None,
    ) -> Dict[str, str]:
        """
        在分离 HEAD 上重放第一父链，改写指定提交的日期

        参数:
            branch: 当前分支，全部重放成功后才移动该分支
            assignments: 原提交哈希 -> 新时间
            on_conflict: 冲突时调用，返回 False 表示放弃
            on_progress: 每完成一个提交调用一次

        返回:
            原提交哈希 -> 新提交哈希
        """
        if not assignments:
            return {}

        chain = self._lines(["rev-list", "--first-parent", "--reverse", "HEAD"])
        positions = {commit_hash: index for index, commit_hash in enumerate(chain)}
        missing = [h for h in assignments if h not in positions]
        if missing:
            raise GitError(
                f"提交不在分支 {branch} 的第一父链上: {', '.join(h[:8] for h in missing)}",
                command="rebase",
            )

        start = min(positions[h] for h in assignments)
        base = chain[start - 1] if start > 0 else None
        rev = f"{base}..HEAD" if base else "HEAD"
        commits = parse_log_output(self._run(
            ["log", "--first-parent", "--reverse", f"--format={_LOG_FORMAT}", rev]
        ).stdout)

        mapping: Dict[str, str] = {}
        try:
            if base:
                self._run(["checkout", "-q", "--detach", base])

            for index, commit in enumerate(commits):
                when = assignments.get(commit.hash)
                if index == 0 and base is None:
                    new_hash = self._replay_root(commit, when)
                else:
                    new_hash = self._replay_commit(commit, when, on_conflict)
                mapping[commit.hash] = new_hash
                if on_progress:
                    on_progress(index + 1, len(commits), commit)

            self._run(["checkout", "-q", "-B", branch, mapping[commits[-1].hash]])
        except BaseException:
            try:
                self.abort_rewrite(branch)
            except GitError as cleanup_error:
                logger.warning(f"清理重写状态失败: {cleanup_error}")
            raise

        return mapping

    def _identity_env(self, commit: CommitInfo, when: Optional[datetime]) -> Dict[str, str]:
        author_date = format_git_date(when) if when else format_git_date(commit.author_date)
        committer_date = format_git_date(when) if when else format_git_date(commit.committer_date)
        return {
            "GIT_AUTHOR_NAME": commit.author_name,
            "GIT_AUTHOR_EMAIL": commit.author_email,
            "GIT_AUTHOR_DATE": author_date,
            "GIT_COMMITTER_NAME": commit.committer_name,
            "GIT_COMMITTER_EMAIL": commit.committer_email,
            "GIT_COMMITTER_DATE": committer_date,
        }

    def _raw_message(self, commit_hash: str) -> str:
        """读取提交对象中的原始提交信息，保留结尾空行"""
        raw = self._run(["cat-file", "commit", commit_hash]).stdout
        _, _, message = raw.partition("\n\n")
        return message

    def _commit_tree(self, commit: CommitInfo, when: Optional[datetime], parents: List[str]) -> str:
        args = ["commit-tree", commit.tree]
        for parent in parents:
            args += ["-p", parent]
        new_hash = self._run(
            args + ["-F", "-"], env=self._identity_env(commit, when), input=self._raw_message(commit.hash)
        ).stdout.strip()
        self._run(["checkout", "-q", "--detach", new_hash])
        return new_hash

    def _replay_root(self, commit: CommitInfo, when: Optional[datetime]) -> str:
        return self._commit_tree(commit, when, [])

    def _replay_merge(self, commit: CommitInfo, when: Optional[datetime]) -> str:
        # 第一父提交换成重放后的 HEAD，其余父提交保持不变
        return self._commit_tree(commit, when, [self.rev_parse("HEAD")] + commit.parents[1:])

    def _replay_commit(
        self,
        commit: CommitInfo,
        when: Optional[datetime],
        on_conflict: Optional[ConflictCallback],
    ) -> str:
        if len(commit.parents) > 1:
            return self._replay_merge(commit, when)

        result = self._run(["cherry-pick", "--no-commit", commit.hash], check=False)

        if result.returncode != 0:
            conflicts = self._conflicted_files()
            if not conflicts:
                stderr = (result.stderr or "").strip()
                raise GitError(f"git cherry-pick 失败: {stderr}", command="cherry-pick", stderr=stderr)
            logger.warning(f"提交 {commit.hash[:8]} 重放冲突: {', '.join(conflicts)}")
            if on_conflict is None or not on_conflict(commit, conflicts):
                raise CancellationError(CancelReason.CONFLICT_ABORTED, f"提交 {commit.hash[:8]} 冲突，迁移已放弃")
            remaining = self._conflicted_files()
            if remaining:
                raise GitError(f"冲突未解决: {', '.join(remaining)}", command="cherry-pick")

        env = self._identity_env(commit, when)
        self._run(
            ["commit", "-q", "--allow-empty", "--no-verify", "-C", commit.hash,
             f"--date={env['GIT_AUTHOR_DATE']}"],
            env=env,
        )
        return self.rev_parse("HEAD")

    def _conflicted_files(self) -> List[str]:
        return self._lines(["diff", "--name-only", "--diff-filter=U"])

    def resolve_conflicts(self, strategy: str, files: List[str]) -> None:
        for path in files:
            result = self._run(["checkout", f"--{strategy}", "--", path], check=False)
            if result.returncode == 0:
                self._run(["add", "--", path])
            else:
                # 该侧已删除此文件
                self._run(["rm", "-q", "--", path])
            logger.info(f"按 {strategy} 策略解决冲突: {path}")

    def abort_rewrite(self, branch: str) -> None:
        self._run(["cherry-pick", "--quit"], check=False)
        self._run(["reset", "-q", "--hard"], check=False)
        self._run(["checkout", "-q", "-f", branch])

    def reset_hard(self, ref: str) -> None:
        self._run(["reset", "-q", "--hard", ref])

    def diff_trees(self, a: str, b: str) -> List[str]:
        return self._lines(["diff", "--name-only", a, b])

    def stash_create(self) -> Optional[str]:
        ref = self._run(["stash", "create"]).stdout.strip()
        return ref or None

    def stash_apply(self, ref: str) -> None:
        self._run(["stash", "apply", ref])

    def push(self, remote: str = "origin", branch: Optional[str] = None,
             force_with_lease: bool = False) -> None:
        branch = branch or self.get_status().branch
        args = ["push", remote, branch]
        if force_with_lease:
            args.append("--force-with-lease")
        result = self._run(args, env={"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}, check=False)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            retryable = any(marker in stderr.lower() for marker in _RETRYABLE_PUSH_ERRORS)
            raise NetworkError(f"推送到 {remote}/{branch} 失败: {stderr}", retryable=retryable)
