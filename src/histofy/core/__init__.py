"""
histofy 核心逻辑
"""
from .commit import BatchResult, CommitResult, create_batch_commits, create_commit, load_batch_entries, push_with_retry
from .config_store import YamlConfigStore
from .context import HistofyContext
from .dry_run import DryRunManager, format_duration
from .errors import (
    AlreadyUndoneError,
    CancellationError,
    CancelReason,
    ConcurrencyError,
    ConfigurationError,
    GitError,
    HistofyError,
    MigrationError,
    NetworkError,
    OperationNotFoundError,
    UndoSafetyError,
    ValidationError,
)
from .executor import MigrationExecutor, MigrationOptions, MigrationResult, MigrationState
from .git import GitPrimitives, SubprocessGit
from .history import (
    HistoryFilter,
    JsonHistoryStorage,
    MemoryHistoryStorage,
    OperationHistory,
    UndoBatchResult,
    UndoResult,
)
from .lock import RepositoryLock
from .models import (
    CommitInfo,
    CommitMigration,
    DryRunOperation,
    MigrationPlan,
    Operation,
    OperationStatus,
    RepoStatus,
    Snapshot,
    UndoSafetyCheck,
)
from .operation_manager import OperationManager, OperationResult
from .options import CommitOptions, MigrateOptions, UndoOptions, normalize_conflict_strategy
from .planner import MigrationPlanner

__all__ = [
    # git
    'GitPrimitives',
    'SubprocessGit',
    # 迁移
    'MigrationPlanner',
    'MigrationExecutor',
    'MigrationOptions',
    'MigrationResult',
    'MigrationState',
    # 预演
    'DryRunManager',
    'format_duration',
    # 操作与历史
    'HistofyContext',
    'OperationManager',
    'OperationResult',
    'OperationHistory',
    'HistoryFilter',
    'JsonHistoryStorage',
    'MemoryHistoryStorage',
    'UndoResult',
    'UndoBatchResult',
    'RepositoryLock',
    'YamlConfigStore',
    # 提交
    'create_commit',
    'create_batch_commits',
    'load_batch_entries',
    'push_with_retry',
    'CommitResult',
    'BatchResult',
    # 选项
    'CommitOptions',
    'MigrateOptions',
    'UndoOptions',
    'normalize_conflict_strategy',
    # 模型
    'CommitInfo',
    'CommitMigration',
    'DryRunOperation',
    'MigrationPlan',
    'Operation',
    'OperationStatus',
    'RepoStatus',
    'Snapshot',
    'UndoSafetyCheck',
    # 异常
    'HistofyError',
    'MigrationError',
    'ValidationError',
    'GitError',
    'NetworkError',
    'ConcurrencyError',
    'ConfigurationError',
    'CancellationError',
    'CancelReason',
    'OperationNotFoundError',
    'AlreadyUndoneError',
    'UndoSafetyError',
]
