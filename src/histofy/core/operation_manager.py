"""
操作管理模块

为每个命令提供 加锁 -> 快照 -> 执行 -> 失败恢复 -> 记录历史 的事务包装
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .context import HistofyContext
from .errors import (
    AlreadyUndoneError,
    CancellationError,
    CancelReason,
    ConcurrencyError,
    ConfigurationError,
    GitError,
    OperationNotFoundError,
    UndoSafetyError,
    ValidationError,
)
from .lock import RepositoryLock
from .models import Operation, OperationStatus, Snapshot

# 默认可撤销的操作类型
UNDOABLE_TYPES = frozenset({"commit", "batch", "migrate", "config"})

# 在任何写入之前抛出的异常，不需要恢复快照
PRE_WRITE_ERRORS = (ValidationError, AlreadyUndoneError, OperationNotFoundError, UndoSafetyError)


@dataclass
class OperationResult:
    success: bool
    operation_id: str
    result: Any = None
    error: Optional[BaseException] = None
    error_type: Optional[str] = None
    restored: Optional[bool] = None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, CancellationError)


def generate_operation_id() -> str:
    """时间戳 + UUID 保证唯一"""
    return f"op-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


def _result_to_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return {'value': str(value)}


def _extract(value: Any, name: str, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key, value.get(name))
    return getattr(value, name, None)


class OperationManager:
    """操作管理器"""

    def __init__(self, context: HistofyContext):
        self.context = context
        self._active: Dict[str, Operation] = {}
        self._finished: Dict[str, Operation] = {}

    def execute(
        self,
        op_type: str,
        fn: Callable[[str], Any],
        command: str = "",
        args: Optional[Dict[str, Any]] = None,
        description: str = "",
        undoable: Optional[bool] = None,
        undo_data_builder: Optional[Callable[[Any], Dict[str, Any]]] = None,
    ) -> OperationResult:
        """
        执行一个操作

        参数:
            op_type: 操作类型，写操作会加锁并创建快照
            fn: 实际工作，参数为操作 ID
            command: 命令名，写入历史记录
            args: 命令参数，写入历史记录
            description: 操作描述
            undoable: 是否可撤销，默认按类型判断
            undo_data_builder: 根据 fn 的返回值构造撤销数据

        返回:
            OperationResult，不抛出 fn 的异常
        """
        op = Operation(
            id=generate_operation_id(),
            type=op_type,
            command=command or op_type,
            args=dict(args or {}),
            description=description,
            undoable=op_type in UNDOABLE_TYPES if undoable is None else undoable,
            repo_path=str(self.context.repo_path),
        )

        if not op.is_mutating:
            return self._execute_readonly(op, fn)

        lock = RepositoryLock(self.context.settings.lock_dir, self.context.repo_path)
        try:
            lock.acquire(op.id)
        except (ConcurrencyError, ConfigurationError) as e:
            logger.error(f"操作 {op.id} 无法开始: {e}")
            return OperationResult(False, op.id, error=e, error_type=type(e).__name__)

        snapshot = None
        try:
            op.mark_running()
            self._active[op.id] = op
            snapshot = self._create_snapshot(op)
            op.snapshot = snapshot

            value = fn(op.id)

            self._absorb(op, value, undo_data_builder)
            op.complete(_result_to_dict(value))
            self._record(op)
            logger.info(f"操作完成: {op.id} ({op.type}) 用时 {op.duration}s")
            return OperationResult(True, op.id, result=value)
        except PRE_WRITE_ERRORS as e:
            logger.warning(f"操作 {op.id} 未执行: {e}")
            return self._fail(op, e, restored=None)
        except KeyboardInterrupt:
            error = CancellationError(CancelReason.SIGNAL, "操作被中断")
            return self._fail(op, error, restored=self._restore(snapshot))
        except Exception as e:
            logger.error(f"操作 {op.id} 失败: {e}")
            if not getattr(e, "restore_snapshot", True):
                logger.warning(f"操作 {op.id} 未回滚，保留当前状态")
                return self._fail(op, e, restored=None)
            return self._fail(op, e, restored=self._restore(snapshot))
        finally:
            self._active.pop(op.id, None)
            self._finished[op.id] = op
            lock.release()

    def _execute_readonly(self, op: Operation, fn: Callable[[str], Any]) -> OperationResult:
        op.mark_running()
        self._active[op.id] = op
        try:
            value = fn(op.id)
            op.complete(_result_to_dict(value))
            return OperationResult(True, op.id, result=value)
        except Exception as e:
            op.fail(e)
            logger.error(f"操作 {op.id} 失败: {e}")
            return OperationResult(False, op.id, error=e, error_type=type(e).__name__)
        finally:
            self._active.pop(op.id, None)
            self._finished[op.id] = op

    def _fail(self, op: Operation, error: BaseException, restored: Optional[bool]) -> OperationResult:
        op.fail(error)
        if restored is not None:
            op.result = {'restored': restored}
        try:
            self._record(op)
        except ConfigurationError as record_error:
            logger.error(f"无法记录失败的操作 {op.id}: {record_error}")
        return OperationResult(False, op.id, error=error, error_type=type(error).__name__, restored=restored)

    def _record(self, op: Operation) -> None:
        self.context.history.record(op)

    def _absorb(self, op: Operation, value: Any, undo_data_builder) -> None:
        backup_branch = _extract(value, "backup_branch", "backupBranch")
        if backup_branch:
            op.backup_branch = backup_branch
            if op.snapshot is not None:
                op.snapshot.backup_branch_name = backup_branch

        undo_data = undo_data_builder(value) if undo_data_builder else _extract(value, "undo_data", "undoData")
        if undo_data:
            op.undo_data = dict(undo_data)

    def _create_snapshot(self, op: Operation) -> Optional[Snapshot]:
        git = self.context.git
        if not git.is_repository():
            return None

        status = git.get_status()
        stash_ref = None
        if not status.is_clean and status.head:
            stash_ref = git.stash_create()
        snapshot = Snapshot(
            repo_path=str(self.context.repo_path),
            head_commit=status.head,
            branch=status.branch,
            stash_ref=stash_ref,
        )
        logger.debug(f"快照 {op.id}: {status.branch}@{(status.head or '')[:8]} stash={stash_ref}")
        return snapshot

    def _restore(self, snapshot: Optional[Snapshot]) -> bool:
        """恢复快照，返回是否成功"""
        if snapshot is None or not snapshot.head_commit:
            return False

        git = self.context.git
        try:
            if snapshot.branch != "HEAD" and git.get_status().branch != snapshot.branch:
                git.checkout(snapshot.branch, force=True)
            git.reset_hard(snapshot.head_commit)
            if snapshot.stash_ref:
                git.stash_apply(snapshot.stash_ref)
        except GitError as e:
            logger.error(
                f"恢复快照失败: {e}。请手动执行 git reset --hard {snapshot.head_commit}"
            )
            return False
        logger.info(f"已恢复到操作前状态: {snapshot.branch}@{snapshot.head_commit[:8]}")
        return True

    def get_active_operations(self) -> List[Operation]:
        return list(self._active.values())

    def get_operation_status(self, operation_id: str) -> Optional[OperationStatus]:
        op = self._active.get(operation_id) or self._finished.get(operation_id)
        if op is None:
            op = self.context.history.get_operation(operation_id)
        return op.status if op else None
