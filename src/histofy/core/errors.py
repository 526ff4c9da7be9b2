"""
异常定义模块

所有对外抛出的异常都继承自 HistofyError，调用方按类型区分处理，不做消息匹配
"""
from enum import Enum
from typing import Optional


class HistofyError(Exception):
    """histofy 异常基类"""


class ValidationError(HistofyError):
    """输入校验失败（在任何写操作之前抛出）"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class GitError(HistofyError):
    """git 子进程调用失败"""

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class NetworkError(HistofyError):
    """推送等远程操作失败"""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ConcurrencyError(HistofyError):
    """同一仓库已有写操作在运行"""


class ConfigurationError(HistofyError):
    """历史记录或备份存储不可用"""


class CancelReason(str, Enum):
    SIGNAL = "signal"
    CONFLICT_ABORTED = "conflict_aborted"
    USER = "user"


class CancellationError(HistofyError):
    """操作被取消，reason 说明取消来源"""

    def __init__(self, reason: CancelReason, message: str = ""):
        super().__init__(message or f"操作已取消: {reason.value}")
        self.reason = reason


class OperationNotFoundError(HistofyError):
    """历史记录中不存在该操作"""

    def __init__(self, operation_id: str):
        super().__init__(f"历史记录中不存在操作: {operation_id}")
        self.operation_id = operation_id


class AlreadyUndoneError(HistofyError):
    """操作已经撤销过"""

    def __init__(self, operation_id: str):
        super().__init__(f"操作 {operation_id} 已撤销 (already undone)")
        self.operation_id = operation_id


class UndoSafetyError(HistofyError):
    """撤销安全检查未通过"""

    def __init__(self, operation_id: str, reason: str):
        super().__init__(f"无法安全撤销操作 {operation_id}: {reason}，可使用 --force 强制执行")
        self.operation_id = operation_id
        self.reason = reason


class MigrationError(HistofyError):
    """迁移未完成，result 中包含回滚状态和备份分支

    restore_snapshot 为 False 时操作管理器保留失败现场，不恢复快照
    """

    def __init__(self, message: str, result=None, restore_snapshot: bool = True):
        super().__init__(message)
        self.result = result
        self.restore_snapshot = restore_snapshot
