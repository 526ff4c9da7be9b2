"""
仓库锁 - 同一仓库同一时间只允许一个写操作
"""
import hashlib
from pathlib import Path
from typing import Optional

import portalocker
from loguru import logger

from .errors import ConcurrencyError, ConfigurationError


def lock_path_for(lock_dir: Path, repo_path: Path) -> Path:
    """每个仓库路径对应锁目录下的一个锁文件"""
    digest = hashlib.sha1(str(Path(repo_path).resolve()).encode("utf-8")).hexdigest()[:16]
    return Path(lock_dir) / f"{digest}.lock"


class RepositoryLock:
    """基于 portalocker 的非阻塞排他锁，获取失败立即抛出 ConcurrencyError"""

    def __init__(self, lock_dir: Path, repo_path: Path):
        self.repo_path = Path(repo_path)
        self.path = lock_path_for(lock_dir, repo_path)
        self._file = None

    @property
    def locked(self) -> bool:
        return self._file is not None

    def acquire(self, owner: Optional[str] = None) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.path, "a+", encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"无法创建锁文件 {self.path}: {e}") from e

        try:
            portalocker.lock(lock_file, portalocker.LOCK_EX | portalocker.LOCK_NB)
        except portalocker.LockException as e:
            lock_file.close()
            raise ConcurrencyError(f"仓库 {self.repo_path} 正在执行其他写操作，请稍后再试") from e

        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(f"{owner or ''}\n{self.repo_path}\n")
        lock_file.flush()
        self._file = lock_file
        logger.debug(f"已获取仓库锁: {self.path}")

    def release(self) -> None:
        if self._file is None:
            return
        try:
            portalocker.unlock(self._file)
        finally:
            self._file.close()
            self._file = None
        logger.debug(f"已释放仓库锁: {self.path}")

    def __enter__(self) -> "RepositoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
