"""
迁移执行模块 - 带备份、冲突处理和回滚的提交日期改写

状态流转:
    PLANNING -> BACKUP_CREATED -> REWRITING <-> CONFLICT -> VALIDATING
    -> COMPLETED | ABORTED | ROLLED_BACK | ROLLBACK_FAILED
"""
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..config import BACKUP_PREFIX, CONFLICT_STRATEGIES
from .errors import CancellationError, CancelReason, GitError, ValidationError
from .git import ConflictCallback, GitPrimitives
from .models import CommitInfo, MigrationPlan
from .planner import MigrationPlanner

# 进度回调: (消息, 百分比或 None)
ProgressCallback = Callable[[str, Optional[float]], None]


class MigrationState(str, Enum):
    PLANNING = "planning"
    BACKUP_CREATED = "backup_created"
    REWRITING = "rewriting"
    CONFLICT = "conflict"
    VALIDATING = "validating"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


TERMINAL_STATES = frozenset({
    MigrationState.COMPLETED,
    MigrationState.ABORTED,
    MigrationState.ROLLED_BACK,
    MigrationState.ROLLBACK_FAILED,
})


@dataclass
class MigrationOptions:
    """迁移执行选项"""
    auto_resolve: Optional[str] = None  # theirs / ours
    create_backup: bool = True
    rollback_on_failure: bool = True
    operation_id: Optional[str] = None
    conflict_handler: Optional[ConflictCallback] = None

    def __post_init__(self):
        if self.auto_resolve is not None and self.auto_resolve not in CONFLICT_STRATEGIES:
            raise ValidationError(f"未知的冲突解决策略: {self.auto_resolve}", field="auto_resolve")


@dataclass
class MigrationResult:
    """迁移执行结果"""
    success: bool = False
    migrated_count: int = 0
    backup_branch: Optional[str] = None
    conflicts_encountered: bool = False
    aborted: bool = False
    rolled_back: bool = False
    rollback_failed: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    state: MigrationState = MigrationState.PLANNING
    integrity_warnings: List[str] = field(default_factory=list)
    original_head: Optional[str] = None
    new_head: Optional[str] = None
    commit_map: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'migratedCount': self.migrated_count,
            'backupBranch': self.backup_branch,
            'conflictsEncountered': self.conflicts_encountered,
            'aborted': self.aborted,
            'rolledBack': self.rolled_back,
            'rollbackFailed': self.rollback_failed,
            'cancelled': self.cancelled,
            'error': self.error,
            'state': self.state.value,
            'integrityWarnings': list(self.integrity_warnings),
            'originalHead': self.original_head,
            'newHead': self.new_head,
            'commitMap': dict(self.commit_map),
        }


def backup_branch_name(operation_id: Optional[str], prefix: str = BACKUP_PREFIX) -> str:
    """生成备份分支名: histofy-backup-<操作ID>-<时间戳>"""
    stamp = datetime.now().strftime("%Y%m%d%H%M%S")
    return f"{prefix}{operation_id or 'manual'}-{stamp}"


class _InterruptGuard:
    """改写期间把 SIGINT/SIGTERM 转为 CancellationError"""

    _SIGNALS = tuple(s for s in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)) if s)

    def __init__(self):
        self._previous = {}

    def _handle(self, signum, frame):
        raise CancellationError(CancelReason.SIGNAL, f"收到信号 {signum}，正在回滚迁移")

    def __enter__(self):
        # 只有主线程能安装信号处理器
        if threading.current_thread() is threading.main_thread():
            for signum in self._SIGNALS:
                self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, exc_type, exc, tb):
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        return False


class MigrationExecutor:
    """提交日期迁移执行器"""

    def __init__(
        self,
        git: GitPrimitives,
        planner: Optional[MigrationPlanner] = None,
        progress: Optional[ProgressCallback] = None,
        backup_prefix: str = BACKUP_PREFIX,
    ):
        self.git = git
        self.planner = planner or MigrationPlanner()
        self.progress = progress
        self.backup_prefix = backup_prefix
        self.state = MigrationState.PLANNING
        self.transitions: List[MigrationState] = [MigrationState.PLANNING]

    def _set_state(self, state: MigrationState) -> None:
        if self.state != state:
            logger.debug(f"迁移状态: {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    def _report(self, message: str, percent: Optional[float] = None) -> None:
        if self.progress is None:
            return
        try:
            self.progress(message, percent)
        except Exception as e:
            logger.warning(f"进度回调出错，已忽略: {e}")

    def plan(
        self,
        rev_range: str,
        target_date: str,
        spread_days: int = 1,
        start_time: str = "09:00",
        preserve_order: bool = True,
    ) -> MigrationPlan:
        """解析提交范围并生成迁移计划"""
        if not rev_range or not rev_range.strip():
            raise ValidationError("提交范围不能为空", field="commit_range")
        try:
            commits = self.git.log(rev_range.strip())
        except GitError as e:
            raise ValidationError(f"无法解析提交范围 {rev_range}: {e.stderr or e}", field="commit_range") from e

        plan = self.planner.plan(
            commits,
            target_date,
            spread_days=spread_days,
            start_time=start_time,
            preserve_order=preserve_order,
        )
        plan.rev_range = rev_range.strip()
        self._report(f"已规划 {len(plan.commits)} 个提交", 0)
        return plan

    def execute(self, plan: MigrationPlan, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """
        执行迁移计划

        参数:
            plan: MigrationPlanner 生成的计划
            options: 执行选项

        返回:
            MigrationResult，失败时不抛异常而是体现在结果中

        异常:
            ValidationError: 计划为空、分离 HEAD 或工作区有未提交改动
            GitError: 创建备份分支失败（此时没有任何改动）
        """
        options = options or MigrationOptions()
        self.state = MigrationState.PLANNING
        self.transitions = [MigrationState.PLANNING]

        if not plan.commits:
            raise ValidationError("迁移计划中没有提交", field="commit_range")

        status = self.git.get_status()
        if status.detached or status.head is None:
            raise ValidationError("当前处于分离 HEAD 状态，请先切换到分支", field="branch")
        if not status.is_clean:
            raise ValidationError("工作区有未提交的改动，请先提交或暂存", field="working_tree")

        branch = status.branch
        result = MigrationResult(original_head=status.head)

        if options.create_backup:
            name = backup_branch_name(options.operation_id, self.backup_prefix)
            self._report(f"创建备份分支 {name}", 0)
            self.git.create_branch(name, status.head)
            result.backup_branch = name
            logger.info(f"已创建备份分支: {name}")
        self._set_state(MigrationState.BACKUP_CREATED)

        assignments = {c.original_hash: c.timestamp for c in plan.commits}
        total = len(plan.commits)
        try:
            with _InterruptGuard():
                self._set_state(MigrationState.REWRITING)
                mapping = self.git.rebase_with_dates(
                    branch,
                    assignments,
                    on_conflict=self._conflict_callback(options, result),
                    on_progress=self._step_callback(assignments, total),
                )
            result.commit_map = {h: mapping[h] for h in assignments if h in mapping}
            result.migrated_count = len(result.commit_map)

            self._set_state(MigrationState.VALIDATING)
            self._report("校验提交内容", 95)
            result.integrity_warnings = self._validate(result.commit_map)
            result.new_head = self.git.rev_parse("HEAD")
        except CancellationError as e:
            if e.reason == CancelReason.CONFLICT_ABORTED:
                # 重放已清理，分支未移动
                result.aborted = True
                result.error = str(e)
                self._set_state(MigrationState.ABORTED)
                result.state = self.state
                logger.warning(f"迁移已放弃: {e}")
                if result.backup_branch:
                    logger.info(f"备份分支已保留: {result.backup_branch}")
                return result
            result.cancelled = True
            return self._handle_failure(e, branch, result, options)
        except Exception as e:
            return self._handle_failure(e, branch, result, options)

        for warning in result.integrity_warnings:
            logger.warning(warning)
        result.success = True
        self._set_state(MigrationState.COMPLETED)
        result.state = self.state
        self._report(f"迁移完成，共 {result.migrated_count} 个提交", 100)
        logger.info(f"迁移完成: {result.migrated_count} 个提交，HEAD {status.head[:8]} -> {result.new_head[:8]}")
        return result

    def _conflict_callback(self, options: MigrationOptions, result: MigrationResult) -> ConflictCallback:
        def on_conflict(commit: CommitInfo, files: List[str]) -> bool:
            result.conflicts_encountered = True
            self._set_state(MigrationState.CONFLICT)
            self._report(f"提交 {commit.hash[:8]} 冲突: {', '.join(files)}")

            if options.auto_resolve:
                self.git.resolve_conflicts(options.auto_resolve, files)
                logger.info(f"已按 {options.auto_resolve} 自动解决 {len(files)} 个冲突文件")
                self._set_state(MigrationState.REWRITING)
                return True

            if options.conflict_handler is None:
                return False
            resume = bool(options.conflict_handler(commit, files))
            if resume:
                self._set_state(MigrationState.REWRITING)
            return resume

        return on_conflict

    def _step_callback(self, assignments: Dict[str, datetime], total: int):
        done = {'count': 0}

        def on_step(index: int, count: int, commit: CommitInfo) -> None:
            if commit.hash not in assignments:
                return
            done['count'] += 1
            percent = round(done['count'] * 90 / total, 1)
            self._report(f"迁移提交 {commit.hash[:8]} ({done['count']}/{total})", percent)

        return on_step

    def _validate(self, commit_map: Dict[str, str]) -> List[str]:
        warnings = []
        for original, rewritten in commit_map.items():
            changed = self.git.diff_trees(original, rewritten)
            if changed:
                warnings.append(
                    f"提交 {original[:8]} -> {rewritten[:8]} 内容不一致: {', '.join(changed[:5])}"
                )
            before = len(self.git.log(original)[0].parents)
            after = len(self.git.log(rewritten)[0].parents)
            if before != after:
                warnings.append(
                    f"提交 {original[:8]} -> {rewritten[:8]} 父提交数量不一致: {before} -> {after}"
                )
        return warnings

    def _handle_failure(
        self,
        error: BaseException,
        branch: str,
        result: MigrationResult,
        options: MigrationOptions,
    ) -> MigrationResult:
        result.error = str(error)
        logger.error(f"迁移失败: {error}")

        if not options.rollback_on_failure:
            result.aborted = True
            self._set_state(MigrationState.ABORTED)
            result.state = self.state
            if result.backup_branch:
                logger.warning(f"未回滚，可手动恢复: git reset --hard {result.backup_branch}")
            return result

        target = result.backup_branch or result.original_head
        self._report(f"回滚到 {target}")
        try:
            self.git.abort_rewrite(branch)
            self.git.reset_hard(target)
            if self.git.rev_parse("HEAD") != result.original_head:
                raise GitError("回滚后 HEAD 与原 HEAD 不一致", command="reset")
        except Exception as rollback_error:
            result.rollback_failed = True
            self._set_state(MigrationState.ROLLBACK_FAILED)
            result.state = self.state
            logger.error(
                f"回滚失败: {rollback_error}。请手动执行 git reset --hard {target} 恢复"
                + (f"（备份分支 {result.backup_branch}）" if result.backup_branch else "")
            )
            return result

        result.rolled_back = True
        self._set_state(MigrationState.ROLLED_BACK)
        result.state = self.state
        logger.info(f"已回滚到 {target}")
        return result
