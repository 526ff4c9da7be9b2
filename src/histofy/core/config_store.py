"""用户配置存储，YAML 文件中的点分键值"""
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from .errors import ConfigurationError


class YamlConfigStore:
    """
    以 YAML 保存的简单键值配置

    键使用点分路径，例如 git.defaultAuthor
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"无法读取配置文件 {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                yaml.dump(data, f, default_flow_style=False, allow_unicode=True)
        except OSError as e:
            raise ConfigurationError(f"无法写入配置文件 {self.path}: {e}") from e

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        node = self._load()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def has(self, key: str) -> bool:
        marker = object()
        return self.get(key, marker) is not marker

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        parts = key.split(".")
        node = data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self._save(data)
        logger.debug(f"配置已更新: {key}")

    def remove(self, key: str) -> None:
        data = self._load()
        parts = key.split(".")
        node = data
        for part in parts[:-1]:
            node = node.get(part)
            if not isinstance(node, dict):
                return
        if parts[-1] in node:
            del node[parts[-1]]
            self._save(data)
            logger.debug(f"配置已删除: {key}")
