"""
histofy - 提交日期改写工具
支持指定日期提交、批量提交、提交日期迁移，所有写操作都有快照、备份和撤销
"""
from .config import Settings
from .core import (
    DryRunManager,
    HistofyContext,
    MigrationExecutor,
    MigrationPlanner,
    OperationHistory,
    OperationManager,
    SubprocessGit,
)

__version__ = "1.0.0"

__all__ = [
    'Settings',
    'DryRunManager',
    'HistofyContext',
    'MigrationExecutor',
    'MigrationPlanner',
    'OperationHistory',
    'OperationManager',
    'SubprocessGit',
]
