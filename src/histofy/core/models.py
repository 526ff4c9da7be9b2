"""histofy 数据模型"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNDONE = "undone"


# 会改写仓库或配置的操作类型，执行前需要加锁和快照
MUTATING_TYPES = frozenset({"commit", "migrate", "batch", "config", "undo"})


@dataclass
class RepoStatus:
    """仓库当前状态"""
    branch: str  # 分离 HEAD 时为 "HEAD"
    head: Optional[str]  # 空仓库时为 None
    is_clean: bool = True
    staged: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)

    @property
    def detached(self) -> bool:
        return self.branch == "HEAD"


@dataclass
class CommitInfo:
    """git log 返回的单个提交"""
    hash: str
    tree: str
    parents: List[str]
    author_name: str
    author_email: str
    author_date: datetime
    committer_name: str
    committer_email: str
    committer_date: datetime
    message: str

    @property
    def author(self) -> str:
        return f"{self.author_name} <{self.author_email}>"


@dataclass
class Snapshot:
    """写操作之前的仓库最小状态"""
    repo_path: str
    head_commit: Optional[str]
    branch: str
    backup_branch_name: Optional[str] = None
    stash_ref: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repoPath': self.repo_path,
            'headCommit': self.head_commit,
            'branch': self.branch,
            'backupBranchName': self.backup_branch_name,
            'stashRef': self.stash_ref,
            'createdAt': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            repo_path=data.get('repoPath', ''),
            head_commit=data.get('headCommit'),
            branch=data.get('branch', ''),
            backup_branch_name=data.get('backupBranchName'),
            stash_ref=data.get('stashRef'),
            created_at=data.get('createdAt', ''),
        )


@dataclass
class Operation:
    """一次用户操作，既是运行时状态也是历史记录条目"""
    id: str
    type: str
    command: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    status: OperationStatus = OperationStatus.PENDING
    undoable: bool = True
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    completed_at: Optional[str] = None
    repo_path: Optional[str] = None
    snapshot: Optional[Snapshot] = None
    backup_branch: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)
    undo_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration: float = 0.0
    undone_at: Optional[str] = None
    undo_result: Optional[Dict[str, Any]] = None

    @property
    def is_mutating(self) -> bool:
        return self.type in MUTATING_TYPES

    def mark_running(self) -> None:
        self.status = OperationStatus.RUNNING
        self.started_at = datetime.now().isoformat()

    def complete(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.status = OperationStatus.COMPLETED
        self.completed_at = datetime.now().isoformat()
        self.result = result or {}
        self.duration = self._elapsed()

    def fail(self, error: BaseException) -> None:
        self.status = OperationStatus.FAILED
        self.completed_at = datetime.now().isoformat()
        self.error = str(error)
        self.undoable = False
        self.duration = self._elapsed()

    def _elapsed(self) -> float:
        try:
            start = datetime.fromisoformat(self.started_at)
        except ValueError:
            return 0.0
        return round((datetime.now() - start).total_seconds(), 3)

    def to_dict(self) -> Dict[str, Any]:
        """历史文件中的 JSON 结构"""
        return {
            'id': self.id,
            'timestamp': self.started_at,
            'type': self.type,
            'command': self.command,
            'args': self.args,
            'description': self.description,
            'status': self.status.value,
            'undoable': self.undoable,
            'backupBranch': self.backup_branch,
            'repoPath': self.repo_path,
            'snapshot': self.snapshot.to_dict() if self.snapshot else None,
            'result': self.result,
            'undoData': self.undo_data,
            'error': self.error,
            'completedAt': self.completed_at,
            'duration': self.duration,
            'undoneAt': self.undone_at,
            'undoResult': self.undo_result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        snapshot = data.get('snapshot')
        return cls(
            id=data['id'],
            type=data.get('type', ''),
            command=data.get('command', ''),
            args=data.get('args') or {},
            description=data.get('description', ''),
            status=OperationStatus(data.get('status', 'completed')),
            undoable=bool(data.get('undoable', True)),
            started_at=data.get('timestamp', ''),
            completed_at=data.get('completedAt'),
            repo_path=data.get('repoPath'),
            snapshot=Snapshot.from_dict(snapshot) if snapshot else None,
            backup_branch=data.get('backupBranch'),
            result=data.get('result') or {},
            undo_data=data.get('undoData') or {},
            error=data.get('error'),
            duration=data.get('duration', 0.0),
            undone_at=data.get('undoneAt'),
            undo_result=data.get('undoResult'),
        )


@dataclass(frozen=True)
class CommitMigration:
    """单个提交的日期迁移，规划后不可变"""
    original_hash: str
    original_date: str
    new_date: str  # YYYY-MM-DD
    new_time: str  # HH:MM，按秒间隔时为 HH:MM:SS
    author: str
    message: str

    @property
    def timestamp(self) -> datetime:
        fmt = "%Y-%m-%d %H:%M:%S" if self.new_time.count(":") == 2 else "%Y-%m-%d %H:%M"
        return datetime.strptime(f"{self.new_date} {self.new_time}", fmt)

    def to_dict(self) -> Dict[str, str]:
        return {
            'originalHash': self.original_hash,
            'originalDate': self.original_date,
            'newDate': self.new_date,
            'newTime': self.new_time,
            'author': self.author,
            'message': self.message,
        }


@dataclass
class MigrationPlan:
    """迁移计划"""
    strategy: str
    target_date: str
    spread_days: int
    start_time: str
    commits: List[CommitMigration] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rev_range: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy': self.strategy,
            'targetDate': self.target_date,
            'spreadDays': self.spread_days,
            'startTime': self.start_time,
            'revRange': self.rev_range,
            'commits': [c.to_dict() for c in self.commits],
            'warnings': list(self.warnings),
        }


@dataclass
class DryRunOperation:
    """预演中的单个子操作"""
    id: int
    type: str
    description: str
    details: Dict[str, str] = field(default_factory=dict)
    estimated_duration: int = 0  # 秒
    risk_level: str = "low"  # low / medium / high
    reversible: bool = True
    git_command: Optional[str] = None
    git_args: List[str] = field(default_factory=list)
    affected_files: Set[str] = field(default_factory=set)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            'id': data['id'],
            'type': data['type'],
            'description': data['description'],
            'details': data['details'],
            'estimatedDuration': data['estimated_duration'],
            'riskLevel': data['risk_level'],
            'reversible': data['reversible'],
            'gitCommand': data['git_command'],
            'gitArgs': data['git_args'],
            'affectedFiles': sorted(self.affected_files),
            'timestamp': data['timestamp'],
        }


@dataclass
class UndoSafetyCheck:
    safe: bool
    reason: Optional[str] = None
