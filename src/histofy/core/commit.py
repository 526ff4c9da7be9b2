"""
提交服务模块 - 指定日期的单个提交、批量提交和带重试的推送
"""
import csv
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..config import PUSH_BACKOFF_SECONDS, PUSH_RETRIES
from .errors import GitError, NetworkError, ValidationError
from .git import GitPrimitives
from .options import CommitOptions


@dataclass
class CommitResult:
    commit_hash: str
    parent_hash: Optional[str]
    message: str
    date: Optional[str] = None
    author: Optional[str] = None
    pushed: bool = False

    @property
    def undo_data(self) -> Dict[str, Any]:
        return {'commitHash': self.commit_hash, 'parentHash': self.parent_hash}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'commitHash': self.commit_hash,
            'parentHash': self.parent_hash,
            'message': self.message,
            'date': self.date,
            'author': self.author,
            'pushed': self.pushed,
        }


@dataclass
class BatchResult:
    created: List[CommitResult] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def undo_data(self) -> Dict[str, Any]:
        if not self.created:
            return {}
        return {
            'parentHash': self.created[0].parent_hash,
            'createdCommits': [{'hash': c.commit_hash, 'parent': c.parent_hash} for c in self.created],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'createdCount': len(self.created),
            'failedCount': len(self.failed),
            'created': [c.to_dict() for c in self.created],
            'failed': list(self.failed),
        }


def _current_head(git: GitPrimitives) -> Optional[str]:
    return git.get_status().head


def create_commit(git: GitPrimitives, options: CommitOptions, allow_empty: bool = False) -> CommitResult:
    """
    按选项创建一个提交

    参数:
        git: git 接口
        options: 已校验的提交选项
        allow_empty: 允许没有改动的提交（批量提交使用）

    返回:
        CommitResult，undo_data 中记录父提交
    """
    status = git.get_status()
    if status.detached:
        raise ValidationError("当前处于分离 HEAD 状态，无法提交", field="branch")
    if not allow_empty and not options.add_all and not status.staged:
        raise ValidationError("没有暂存的改动，请先 git add 或使用 --add-all", field="add_all")

    parent = status.head
    when = options.when
    commit_hash = git.commit_with_date(
        options.message,
        when=when,
        author=options.author,
        add_all=options.add_all,
        allow_empty=allow_empty,
    )
    logger.info(f"已创建提交 {commit_hash[:8]}: {options.message}")
    return CommitResult(
        commit_hash=commit_hash,
        parent_hash=parent,
        message=options.message,
        date=when.isoformat() if when else None,
        author=options.author,
    )


def load_batch_entries(path: Path) -> List[Dict[str, Any]]:
    """从 JSON 或 CSV 文件读取批量提交数据"""
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"文件不存在: {path}", field="file")

    try:
        if path.suffix.lower() == ".csv":
            with open(path, 'r', encoding='utf-8', newline='') as f:
                entries = [dict(row) for row in csv.DictReader(f)]
        else:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            entries = data.get('commits') if isinstance(data, dict) else data
    except json.JSONDecodeError as e:
        raise ValidationError(f"JSON 格式错误: {e}", field="file") from e
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise ValidationError(f"无法读取批量文件 {path}: {e}", field="file") from e

    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ValidationError("批量数据应为提交对象列表", field="file")
    return entries


def create_batch_commits(
    git: GitPrimitives,
    entries: List[Dict[str, Any]],
    continue_on_error: bool = False,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> BatchResult:
    """
    依次创建多个提交

    参数:
        entries: 每项包含 message，可选 date / time / author
        continue_on_error: 单个提交失败后是否继续

    返回:
        BatchResult
    """
    if not entries:
        raise ValidationError("批量提交数据为空", field="file")

    # 先整体校验，避免做到一半才发现格式错误
    options = []
    for index, entry in enumerate(entries, 1):
        try:
            options.append(CommitOptions(
                message=entry.get('message', ''),
                date=entry.get('date') or None,
                time=entry.get('time') or None,
                author=entry.get('author') or None,
            ))
        except ValidationError as e:
            raise ValidationError(f"第 {index} 条提交无效: {e}", field=e.field) from e

    result = BatchResult(total=len(options))
    for index, commit_options in enumerate(options, 1):
        try:
            result.created.append(create_commit(git, commit_options, allow_empty=True))
        except GitError as e:
            logger.error(f"第 {index} 条提交失败: {e}")
            result.failed.append({'index': index, 'message': commit_options.message, 'error': str(e)})
            if not continue_on_error:
                raise
        if on_progress:
            on_progress(index, len(options))

    logger.info(f"批量提交完成: 成功 {len(result.created)}，失败 {len(result.failed)}")
    return result


def push_with_retry(
    git: GitPrimitives,
    remote: str = "origin",
    branch: Optional[str] = None,
    force_with_lease: bool = False,
    retries: int = PUSH_RETRIES,
    base_delay: float = PUSH_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    推送并在可重试的网络错误时指数退避重试

    返回:
        int: 实际尝试次数
    """
    attempt = 0
    while True:
        try:
            git.push(remote, branch, force_with_lease=force_with_lease)
            logger.info(f"已推送到 {remote}" + (f"/{branch}" if branch else ""))
            return attempt + 1
        except NetworkError as e:
            if not e.retryable or attempt >= retries:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(f"推送失败，{delay:.1f}s 后重试 ({attempt + 1}/{retries}): {e}")
            sleep(delay)
            attempt += 1
