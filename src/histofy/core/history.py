"""
操作历史模块

记录每一次写操作，支持查询、导出以及带安全检查的撤销
"""
import csv
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger

from ..config import MAX_HISTORY_ENTRIES
from .errors import (
    AlreadyUndoneError,
    ConfigurationError,
    GitError,
    HistofyError,
    OperationNotFoundError,
    UndoSafetyError,
    ValidationError,
)
from .git import GitPrimitives
from .models import Operation, OperationStatus, UndoSafetyCheck

HISTORY_VERSION = "1.0.0"
EXPORT_FORMATS = ("json", "csv")
_CSV_FIELDS = ["id", "timestamp", "type", "command", "description", "status", "undoable",
               "backupBranch", "completedAt", "undoneAt", "error"]


class HistoryStorage(Protocol):
    """历史记录存储接口"""

    def append(self, operation: Operation) -> None: ...

    def query(self) -> List[Operation]: ...

    def get(self, operation_id: str) -> Optional[Operation]: ...

    def mark_undone(self, operation_id: str, undone_at: str, undo_result: Dict[str, Any]) -> None: ...

    def replace_all(self, operations: List[Operation]) -> None: ...


class ConfigStore(Protocol):
    """配置存储接口，撤销 config 操作时使用"""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryHistoryStorage:
    """内存存储，按 JSON 结构保存以避免共享可变对象"""

    def __init__(self, max_entries: int = MAX_HISTORY_ENTRIES):
        self.max_entries = max_entries
        self._entries: List[Dict[str, Any]] = []

    def append(self, operation: Operation) -> None:
        self._entries.append(operation.to_dict())
        if len(self._entries) > self.max_entries:
            self._entries = self._entries[-self.max_entries:]

    def query(self) -> List[Operation]:
        return [Operation.from_dict(e) for e in self._entries]

    def get(self, operation_id: str) -> Optional[Operation]:
        for entry in self._entries:
            if entry['id'] == operation_id:
                return Operation.from_dict(entry)
        return None

    def mark_undone(self, operation_id: str, undone_at: str, undo_result: Dict[str, Any]) -> None:
        for entry in self._entries:
            if entry['id'] == operation_id:
                entry['status'] = OperationStatus.UNDONE.value
                entry['undoneAt'] = undone_at
                entry['undoResult'] = undo_result
                return
        raise OperationNotFoundError(operation_id)

    def replace_all(self, operations: List[Operation]) -> None:
        self._entries = [op.to_dict() for op in operations]


class JsonHistoryStorage:
    """
    JSON 文件存储

    文件结构: {"version": "1.0.0", "operations": [...]}，最多保留 max_entries 条
    """

    def __init__(self, path: Path, max_entries: int = MAX_HISTORY_ENTRIES):
        self.path = Path(path)
        self.max_entries = max_entries

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"无法读取历史记录 {self.path}: {e}") from e

        if isinstance(data, list):
            return data
        if not isinstance(data, dict) or not isinstance(data.get('operations'), list):
            raise ConfigurationError(f"历史记录格式无效: {self.path}")
        return data['operations']

    def _save(self, entries: List[Dict[str, Any]]) -> None:
        entries = entries[-self.max_entries:]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".operations-", suffix=".tmp", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump({'version': HISTORY_VERSION, 'operations': entries}, f, ensure_ascii=False, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise ConfigurationError(f"无法写入历史记录 {self.path}: {e}") from e

    def append(self, operation: Operation) -> None:
        entries = self._load()
        entries.append(operation.to_dict())
        self._save(entries)

    def query(self) -> List[Operation]:
        return [Operation.from_dict(e) for e in self._load()]

    def get(self, operation_id: str) -> Optional[Operation]:
        for entry in self._load():
            if entry.get('id') == operation_id:
                return Operation.from_dict(entry)
        return None

    def mark_undone(self, operation_id: str, undone_at: str, undo_result: Dict[str, Any]) -> None:
        entries = self._load()
        for entry in entries:
            if entry.get('id') == operation_id:
                entry['status'] = OperationStatus.UNDONE.value
                entry['undoneAt'] = undone_at
                entry['undoResult'] = undo_result
                self._save(entries)
                return
        raise OperationNotFoundError(operation_id)

    def replace_all(self, operations: List[Operation]) -> None:
        self._save([op.to_dict() for op in operations])


@dataclass
class HistoryFilter:
    limit: Optional[int] = None
    type: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    undoable_only: bool = False


@dataclass
class UndoResult:
    """单个操作的撤销结果"""
    operation_id: str
    type: str
    success: bool = False
    dry_run: bool = False
    forced: bool = False
    action: str = ""
    target: Optional[str] = None
    safety: Optional[UndoSafetyCheck] = None
    undone_at: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operationId': self.operation_id,
            'type': self.type,
            'success': self.success,
            'dryRun': self.dry_run,
            'forced': self.forced,
            'action': self.action,
            'target': self.target,
            'safe': self.safety.safe if self.safety else None,
            'reason': self.safety.reason if self.safety else None,
            'undoneAt': self.undone_at,
            'error': self.error,
        }


@dataclass
class UndoBatchResult:
    results: List[UndoResult] = field(default_factory=list)
    requested: int = 0

    @property
    def undone_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        return self.undone_count == self.requested

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'requested': self.requested,
            'undoneCount': self.undone_count,
            'failedCount': self.failed_count,
            'results': [r.to_dict() for r in self.results],
        }


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


class OperationHistory:
    """操作历史管理器"""

    def __init__(
        self,
        storage: HistoryStorage,
        git_factory: Callable[[Path], GitPrimitives],
        config_store: Optional[ConfigStore] = None,
    ):
        """
        参数:
            storage: 历史记录存储
            git_factory: 根据仓库路径创建 GitPrimitives
            config_store: 撤销 config 操作时使用的配置存储
        """
        self.storage = storage
        self.git_factory = git_factory
        self.config_store = config_store

    def record(self, operation: Operation) -> str:
        self.storage.append(operation)
        logger.debug(f"已记录操作 {operation.id} ({operation.type}, {operation.status.value})")
        return operation.id

    def get_history(self, filter: Optional[HistoryFilter] = None) -> List[Operation]:
        """按时间倒序返回历史记录"""
        filter = filter or HistoryFilter()
        operations = list(reversed(self.storage.query()))

        result = []
        for op in operations:
            if filter.type and op.type != filter.type:
                continue
            if filter.undoable_only and not self._is_undo_candidate(op):
                continue
            started = _parse_timestamp(op.started_at)
            if filter.since and (started is None or started < filter.since.replace(tzinfo=None)):
                continue
            if filter.until and (started is None or started > filter.until.replace(tzinfo=None)):
                continue
            result.append(op)
            if filter.limit is not None and len(result) >= filter.limit:
                break
        return result

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self.storage.get(operation_id)

    @staticmethod
    def _is_undo_candidate(op: Operation) -> bool:
        return op.undoable and op.status == OperationStatus.COMPLETED and op.type != "undo"

    def check_undo_safety(self, op: Operation, expected_head: Optional[str] = None) -> UndoSafetyCheck:
        """
        检查操作当前能否安全撤销（每次实时计算）

        参数:
            op: 待撤销的操作
            expected_head: 预演连续撤销时前一步撤销后的 HEAD，为空时使用仓库当前 HEAD

        返回:
            UndoSafetyCheck: safe 为 False 时 reason 说明原因
        """
        if op.status == OperationStatus.UNDONE:
            return UndoSafetyCheck(False, "操作已撤销 (already undone)")
        if not self._is_undo_candidate(op):
            return UndoSafetyCheck(False, "该操作不可撤销")

        if op.type == "config":
            if self.config_store is None:
                return UndoSafetyCheck(False, "配置存储不可用")
            if 'key' not in op.undo_data:
                return UndoSafetyCheck(False, "缺少撤销所需的配置数据")
            return UndoSafetyCheck(True)

        if not op.repo_path or not Path(op.repo_path).is_dir():
            return UndoSafetyCheck(False, f"仓库路径不存在: {op.repo_path}")

        try:
            git = self.git_factory(Path(op.repo_path))
            if not git.is_repository():
                return UndoSafetyCheck(False, f"不是 git 仓库: {op.repo_path}")
            status = git.get_status()
            if not status.is_clean:
                return UndoSafetyCheck(False, "工作区有未提交的改动")
            head = expected_head or status.head

            if op.type == "commit":
                if not op.undo_data.get('parentHash'):
                    return UndoSafetyCheck(False, "根提交无法撤销")
                if head != op.undo_data.get('commitHash'):
                    return UndoSafetyCheck(False, "该提交之后已有新的提交")
            elif op.type == "batch":
                created = op.undo_data.get('createdCommits') or []
                if not created or not op.undo_data.get('parentHash'):
                    return UndoSafetyCheck(False, "缺少批量提交的撤销数据")
                if head != created[-1].get('hash'):
                    return UndoSafetyCheck(False, "批量提交之后已有新的提交")
            elif op.type == "migrate":
                backup = op.backup_branch or op.undo_data.get('backupBranch')
                if not backup:
                    return UndoSafetyCheck(False, "迁移时未创建备份分支")
                if backup not in git.list_branches():
                    return UndoSafetyCheck(False, f"备份分支不存在: {backup}")
                new_head = op.undo_data.get('newHead')
                if new_head and head != new_head:
                    return UndoSafetyCheck(False, "迁移之后历史已有变化")
            else:
                return UndoSafetyCheck(False, f"不支持撤销 {op.type} 操作")
        except GitError as e:
            return UndoSafetyCheck(False, f"无法访问 git 仓库: {e}")

        return UndoSafetyCheck(True)

    def _undo_target(self, op: Operation) -> Tuple[str, Optional[str]]:
        if op.type in ("commit", "batch"):
            target = op.undo_data.get('parentHash')
            return f"git reset --hard {target}", target
        if op.type == "migrate":
            target = op.backup_branch or op.undo_data.get('backupBranch')
            return f"git reset --hard {target}", target
        if op.type == "config":
            key = op.undo_data.get('key')
            return f"恢复配置 {key}", key
        return f"撤销 {op.type}", None

    def undo_operation(
        self,
        operation_id: str,
        force: bool = False,
        dry_run: bool = False,
        expected_head: Optional[str] = None,
    ) -> UndoResult:
        """
        撤销单个操作

        参数:
            operation_id: 操作 ID
            force: 安全检查失败时仍然执行
            dry_run: 只做检查，返回将要执行的结果
            expected_head: 传给 check_undo_safety，用于预演连续撤销

        异常:
            OperationNotFoundError / AlreadyUndoneError / ValidationError / UndoSafetyError
        """
        op = self.storage.get(operation_id)
        if op is None:
            raise OperationNotFoundError(operation_id)
        if op.status == OperationStatus.UNDONE:
            raise AlreadyUndoneError(operation_id)
        if not self._is_undo_candidate(op):
            raise ValidationError(f"操作 {operation_id} 不可撤销", field="operation_id")

        safety = self.check_undo_safety(op, expected_head)
        if not safety.safe and not force:
            raise UndoSafetyError(operation_id, safety.reason or "")

        action, target = self._undo_target(op)
        result = UndoResult(
            operation_id=op.id,
            type=op.type,
            dry_run=dry_run,
            forced=not safety.safe,
            action=action,
            target=target,
            safety=safety,
        )
        if not safety.safe:
            logger.warning(f"强制撤销操作 {op.id} ({op.type})，安全检查未通过: {safety.reason}")

        if dry_run:
            result.success = True
            return result

        self._apply_inverse(op, target)

        result.success = True
        result.undone_at = datetime.now().isoformat()
        self.storage.mark_undone(op.id, result.undone_at, result.to_dict())
        logger.info(f"已撤销操作 {op.id}: {action}")
        return result

    def _apply_inverse(self, op: Operation, target: Optional[str]) -> None:
        if op.type == "config":
            if self.config_store is None:
                raise ConfigurationError("配置存储不可用，无法撤销配置操作")
            key = op.undo_data['key']
            if op.undo_data.get('existed'):
                self.config_store.set(key, op.undo_data.get('previousValue'))
            else:
                self.config_store.remove(key)
            return

        if not target:
            raise ValidationError(f"操作 {op.id} 缺少撤销目标", field="operation_id")
        git = self.git_factory(Path(op.repo_path))
        git.reset_hard(target)

    def _head_after_undo(self, op: Operation, target: Optional[str]) -> Optional[str]:
        if not target or op.type not in ("commit", "batch", "migrate"):
            return None
        if op.type != "migrate":
            return target
        try:
            return self.git_factory(Path(op.repo_path)).rev_parse(target)
        except GitError as e:
            logger.warning(f"无法解析备份分支 {target}: {e}")
            return None

    def undo_last(self, count: int = 1, force: bool = False, dry_run: bool = False) -> UndoBatchResult:
        """撤销最近 count 个可撤销操作，遇到失败时停止（force 时继续）"""
        if count < 1:
            raise ValidationError(f"撤销数量必须大于 0: {count}", field="count")

        candidates = self.get_history(HistoryFilter(limit=count, undoable_only=True))
        if len(candidates) < count:
            raise ValidationError(f"只有 {len(candidates)} 个可撤销操作，无法撤销 {count} 个", field="count")

        batch = UndoBatchResult(requested=count)
        # 预演时按仓库记录每一步撤销之后的 HEAD
        simulated_heads: Dict[str, str] = {}
        for op in candidates:
            try:
                result = self.undo_operation(
                    op.id, force=force, dry_run=dry_run, expected_head=simulated_heads.get(op.repo_path)
                )
                batch.results.append(result)
                if dry_run:
                    head = self._head_after_undo(op, result.target)
                    if head:
                        simulated_heads[op.repo_path] = head
            except HistofyError as e:
                logger.error(f"撤销操作 {op.id} 失败: {e}")
                batch.results.append(UndoResult(operation_id=op.id, type=op.type, dry_run=dry_run, error=str(e)))
                if not force:
                    break
        return batch

    def clear_history(self, older_than: Optional[datetime] = None, op_type: Optional[str] = None) -> Tuple[int, int]:
        """
        清理历史记录

        返回:
            (删除数量, 剩余数量)
        """
        operations = self.storage.query()
        keep = []
        for op in operations:
            matches = True
            if op_type and op.type != op_type:
                matches = False
            if older_than is not None:
                started = _parse_timestamp(op.started_at)
                if started is not None and started >= older_than.replace(tzinfo=None):
                    matches = False
            if not matches:
                keep.append(op)

        removed = len(operations) - len(keep)
        self.storage.replace_all(keep)
        logger.info(f"已清理 {removed} 条历史记录，剩余 {len(keep)} 条")
        return removed, len(keep)

    def export_history(self, path: Path, format: str = "json", filter: Optional[HistoryFilter] = None) -> int:
        """导出历史记录为 json 或 csv，返回导出条数"""
        if format not in EXPORT_FORMATS:
            raise ValidationError(f"不支持的导出格式: {format}", field="format")

        operations = self.get_history(filter)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        if format == "json":
            with open(path, 'w', encoding='utf-8') as f:
                json.dump({
                    'version': HISTORY_VERSION,
                    'exportedAt': datetime.now().isoformat(),
                    'count': len(operations),
                    'operations': [op.to_dict() for op in operations],
                }, f, ensure_ascii=False, indent=2)
        else:
            with open(path, 'w', encoding='utf-8', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=_CSV_FIELDS, extrasaction='ignore')
                writer.writeheader()
                for op in operations:
                    writer.writerow(op.to_dict())

        logger.info(f"已导出 {len(operations)} 条历史记录到 {path}")
        return len(operations)
