"""
程序全局配置模块
"""
import os
from dataclasses import dataclass
from pathlib import Path

# 数据目录，可通过 HISTOFY_HOME 覆盖
DEFAULT_HOME = Path.home() / ".histofy"

# 备份分支前缀
BACKUP_PREFIX = "histofy-backup-"

# 历史记录最多保留条数
MAX_HISTORY_ENTRIES = 100

# 迁移时同一天内相邻提交的间隔（分钟）
MINUTE_INCREMENT = 1

# 允许的最大分散天数
MAX_SPREAD_DAYS = 365

# 推送重试策略
PUSH_RETRIES = 3
PUSH_BACKOFF_SECONDS = 1.0

# 只指定日期时使用的提交时间
DEFAULT_COMMIT_TIME = "12:00"

# 冲突自动解决策略
CONFLICT_STRATEGIES = ("theirs", "ours")


@dataclass
class Settings:
    """一次命令调用使用的配置"""
    home: Path = DEFAULT_HOME
    backup_prefix: str = BACKUP_PREFIX
    max_history_entries: int = MAX_HISTORY_ENTRIES
    push_retries: int = PUSH_RETRIES
    push_backoff: float = PUSH_BACKOFF_SECONDS

    @property
    def history_dir(self) -> Path:
        return self.home / "history"

    @property
    def history_file(self) -> Path:
        return self.history_dir / "operations.json"

    @property
    def lock_dir(self) -> Path:
        return self.history_dir / "locks"

    @property
    def config_file(self) -> Path:
        return self.home / "config.yaml"

    @property
    def log_dir(self) -> Path:
        return self.home / "logs"

    @classmethod
    def load(cls) -> "Settings":
        """读取环境变量构建配置"""
        home = os.environ.get("HISTOFY_HOME")
        settings = cls(home=Path(home).expanduser() if home else DEFAULT_HOME)

        retries = os.environ.get("HISTOFY_PUSH_RETRIES")
        if retries and retries.isdigit():
            settings.push_retries = int(retries)
        return settings
