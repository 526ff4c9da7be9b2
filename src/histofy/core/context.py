"""
运行上下文 - 一次命令调用使用的配置、git、历史记录和配置存储
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from ..config import Settings
from .config_store import YamlConfigStore
from .git import GitPrimitives, SubprocessGit
from .history import ConfigStore, JsonHistoryStorage, OperationHistory


@dataclass
class HistofyContext:
    settings: Settings
    repo_path: Path
    git: GitPrimitives
    history: OperationHistory
    config_store: Optional[ConfigStore] = None
    console: Console = field(default_factory=Console)

    @classmethod
    def create(
        cls,
        repo_path: Optional[Path] = None,
        settings: Optional[Settings] = None,
        console: Optional[Console] = None,
        git_factory: Callable[[Path], GitPrimitives] = SubprocessGit,
    ) -> "HistofyContext":
        """按默认实现组装上下文"""
        settings = settings or Settings.load()
        repo_path = Path(repo_path or Path.cwd()).resolve()
        config_store = YamlConfigStore(settings.config_file)
        history = OperationHistory(
            JsonHistoryStorage(settings.history_file, settings.max_history_entries),
            git_factory,
            config_store,
        )
        return cls(
            settings=settings,
            repo_path=repo_path,
            git=git_factory(repo_path),
            history=history,
            config_store=config_store,
            console=console or Console(),
        )
