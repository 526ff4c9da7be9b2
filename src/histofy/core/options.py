"""
命令选项模块

每个命令的选项在命令行边界校验一次，之后以明确的结构传入核心逻辑
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import List, Optional

from dateutil import parser
from loguru import logger

from ..config import CONFLICT_STRATEGIES, DEFAULT_COMMIT_TIME, MAX_SPREAD_DAYS
from .errors import ValidationError
from .planner import parse_start_time

_AUTHOR_PATTERN = re.compile(r"^[^<>]+\s<[^<>@\s]+@[^<>\s]+>$")


def normalize_conflict_strategy(value: Optional[str]) -> Optional[str]:
    """未知策略只记录警告并忽略"""
    if value is None:
        return None
    strategy = value.strip().lower()
    if strategy in CONFLICT_STRATEGIES:
        return strategy
    logger.warning(f"无效的冲突解决策略 '{value}'，可选值: {', '.join(CONFLICT_STRATEGIES)}，已忽略")
    return None


def parse_date(value: str, field_name: str = "date") -> date:
    """
    解析日期，支持 YYYY-MM-DD 以及 dateutil 能识别的常见格式

    异常:
        ValidationError: 无法解析
    """
    try:
        return parser.parse(value.strip(), yearfirst=True).date()
    except (ValueError, OverflowError, AttributeError) as e:
        raise ValidationError(f"无法解析日期: {value!r}", field=field_name) from e


def parse_time(value: str, field_name: str = "time") -> time:
    try:
        return parse_start_time(value)
    except ValidationError as e:
        raise ValidationError(f"无法解析时间: {value!r}，应为 HH:MM", field=field_name) from e


def validate_author(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not _AUTHOR_PATTERN.match(value):
        raise ValidationError(f"作者格式应为 'Name <email>': {value!r}", field="author")
    return value


@dataclass
class CommitOptions:
    message: str
    date: Optional[str] = None
    time: Optional[str] = None
    author: Optional[str] = None
    add_all: bool = False
    push: bool = False
    dry_run: bool = False
    files: List[str] = field(default_factory=list)
    remote: str = "origin"

    def __post_init__(self):
        if not self.message or not self.message.strip():
            raise ValidationError("提交信息不能为空", field="message")
        self.author = validate_author(self.author)
        if self.time and not self.date:
            # 只给时间时使用今天
            self.date = datetime.now().strftime("%Y-%m-%d")
        self._when = None
        if self.date:
            day = parse_date(self.date)
            clock = parse_time(self.time or DEFAULT_COMMIT_TIME)
            self._when = datetime.combine(day, clock)

    @property
    def when(self) -> Optional[datetime]:
        return self._when


@dataclass
class MigrateOptions:
    rev_range: str
    to_date: str
    spread: int = 1
    start_time: str = "09:00"
    execute: bool = False
    dry_run: bool = False
    auto_resolve: Optional[str] = None
    create_backup: bool = True
    rollback_on_failure: bool = True
    preserve_order: bool = True

    def __post_init__(self):
        if not self.rev_range or not self.rev_range.strip():
            raise ValidationError("提交范围不能为空", field="commit_range")
        self.to_date = parse_date(self.to_date, "to_date").isoformat()
        if isinstance(self.spread, bool) or not isinstance(self.spread, int) or not 1 <= self.spread <= MAX_SPREAD_DAYS:
            raise ValidationError(f"分散天数必须在 1 到 {MAX_SPREAD_DAYS} 之间: {self.spread}", field="spread")
        parse_time(self.start_time, "start_time")
        self.auto_resolve = normalize_conflict_strategy(self.auto_resolve)

    @property
    def preview_only(self) -> bool:
        """未指定 --execute 或指定了 --dry-run 时只预览"""
        return self.dry_run or not self.execute


@dataclass
class UndoOptions:
    force: bool = False
    dry_run: bool = False
    yes: bool = False
