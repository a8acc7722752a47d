"""
配置文件加载

配置文件路径优先取环境变量 SESSION_REPL_CONFIG，默认为当前目录下的 config.yaml。
"""

import os
import logging
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV = "SESSION_REPL_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"

_config_cache: Dict[str, Dict[str, Any]] = {}


def get_config_path(path: Optional[str] = None) -> str:
    """获取配置文件路径"""
    return path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH


def get_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    读取 YAML 配置

    Args:
        path: 配置文件路径（可选）

    Returns:
        配置字典，文件不存在时返回空字典
    """
    config_path = get_config_path(path)
    if config_path in _config_cache:
        return _config_cache[config_path]

    if not os.path.exists(config_path):
        logger.info(f"Config file {config_path} not found, using defaults")
        config: Dict[str, Any] = {}
    else:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        if not isinstance(config, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        logger.info(f"Loaded config from {config_path}")

    _config_cache[config_path] = config
    return config


def clear_config_cache() -> None:
    """清空配置缓存（测试用）"""
    _config_cache.clear()
