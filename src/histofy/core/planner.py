"""
迁移规划模块 - 根据提交范围、目标日期、分散天数和开始时间计算新的提交时间

规划是纯函数：相同输入总是得到相同的计划，预演和真正执行使用同一份结果
"""
import re
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Sequence, Union

from loguru import logger

from ..config import MAX_SPREAD_DAYS, MINUTE_INCREMENT
from .errors import ValidationError
from .models import CommitInfo, CommitMigration, MigrationPlan

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_SECONDS_PER_DAY = 24 * 3600


def parse_start_time(value: str) -> time:
    """解析 HH:MM 格式的开始时间"""
    match = _TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValidationError(f"开始时间格式无效: {value!r}，应为 HH:MM", field="start_time")
    return time(int(match.group(1)), int(match.group(2)))


def parse_target_date(value: Union[str, date]) -> date:
    """解析 YYYY-MM-DD 格式的目标日期"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError as e:
        raise ValidationError(f"目标日期格式无效: {value!r}，应为 YYYY-MM-DD", field="target_date") from e


def validate_spread(spread_days) -> int:
    if isinstance(spread_days, bool) or not isinstance(spread_days, int):
        raise ValidationError(f"分散天数必须是整数: {spread_days!r}", field="spread_days")
    if spread_days < 1 or spread_days > MAX_SPREAD_DAYS:
        raise ValidationError(f"分散天数必须在 1 到 {MAX_SPREAD_DAYS} 之间: {spread_days}", field="spread_days")
    return spread_days


class MigrationPlanner:
    """迁移规划器"""

    def __init__(self, minute_increment: int = MINUTE_INCREMENT):
        if minute_increment < 1:
            raise ValueError("minute_increment 必须大于 0")
        self.minute_increment = minute_increment

    def plan(
        self,
        commits: Sequence[CommitInfo],
        target_date: Union[str, date],
        spread_days: int = 1,
        start_time: str = "09:00",
        preserve_order: bool = True,
        strategy: str = "rebase",
    ) -> MigrationPlan:
        """
        计算迁移计划

        参数:
            commits: 按从旧到新排列的提交
            target_date: 第一天的日期
            spread_days: 分散到多少天
            start_time: 每天第一个提交的时间
            preserve_order: 是否保持原始顺序（目前总是保持）
            strategy: 执行策略名称，写入计划

        返回:
            MigrationPlan
        """
        if not commits:
            raise ValidationError("指定范围内没有找到提交", field="commit_range")

        first_day = parse_target_date(target_date)
        spread_days = validate_spread(spread_days)
        start = parse_start_time(start_time)

        seen = set()
        for commit in commits:
            if commit.hash in seen:
                raise ValidationError(f"提交重复出现: {commit.hash[:8]}", field="commit_range")
            seen.add(commit.hash)

        warnings: List[str] = []
        count = len(commits)
        if spread_days > count:
            warnings.append(
                f"spread exceeds commit count: 分散 {spread_days} 天但只有 {count} 个提交，"
                f"末尾 {spread_days - count} 天不会使用"
            )
        if not preserve_order:
            warnings.append("暂不支持关闭顺序保持，仍按原始提交顺序规划")

        timestamps = self._timestamps(count, first_day, spread_days, start)

        migrations = []
        for commit, stamp in zip(commits, timestamps):
            new_time = stamp.strftime("%H:%M") if stamp.second == 0 else stamp.strftime("%H:%M:%S")
            migrations.append(CommitMigration(
                original_hash=commit.hash,
                original_date=commit.author_date.isoformat(),
                new_date=stamp.strftime("%Y-%m-%d"),
                new_time=new_time,
                author=commit.author,
                message=commit.message,
            ))

        logger.debug(f"规划 {count} 个提交，分散 {spread_days} 天，从 {first_day} {start_time} 开始")
        return MigrationPlan(
            strategy=strategy,
            target_date=first_day.isoformat(),
            spread_days=spread_days,
            start_time=start.strftime("%H:%M"),
            commits=migrations,
            warnings=warnings,
        )

    def _timestamps(self, count: int, first_day: date, spread_days: int, start: time) -> List[datetime]:
        # 第 i 个提交落在哪一天：提交不多于天数时一天一个，否则按比例分配
        days: Dict[int, List[int]] = OrderedDict()
        for index in range(count):
            day = index if count <= spread_days else (index * spread_days) // count
            days.setdefault(day, []).append(index)

        start_offset = start.hour * 3600 + start.minute * 60
        remaining = _SECONDS_PER_DAY - start_offset
        step = self.minute_increment * 60

        result: List[datetime] = [None] * count
        for day, indices in days.items():
            spacing = step
            if (len(indices) - 1) * step >= remaining:
                # 当天放不下，改为按秒均分剩余时间
                spacing = remaining // len(indices)
                if spacing < 1:
                    raise ValidationError(
                        f"第 {day + 1} 天需要安排 {len(indices)} 个提交，超出当天可用时间",
                        field="spread_days",
                    )
            day_start = datetime.combine(first_day + timedelta(days=day), start)
            for slot, index in enumerate(indices):
                result[index] = day_start + timedelta(seconds=slot * spacing)
        return result
