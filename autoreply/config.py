"""
配置加载模块
Config Loading Module

读取 YAML 配置文件，并把 `${VAR}` / `${VAR:default}` 占位符替换为环境变量。
模型 API 密钥等敏感值通常放在 .env 文件中，由 python-dotenv 注入环境。

自动回复相关的配置位于 `auto_reply` 段，由 autoreply.qa.config 解析为数据类。
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ${NAME} 或 ${NAME:默认值}
ENV_PLACEHOLDER_PATTERN = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')


def load_env_file(env_path: str | None = None) -> bool:
    """
    把 .env 文件中的变量载入进程环境

    未指定路径时由 python-dotenv 从当前目录向上查找。已存在的环境变量不会被覆盖。

    Returns:
        是否找到并载入了 .env 文件
    """
    if not env_path:
        return load_dotenv()

    path = Path(env_path)
    if not path.is_file():
        logger.warning(f".env file not found: {env_path}")
        return False
    return load_dotenv(path)


def _substitute(text: str) -> str:
    def lookup(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        return os.environ.get(name, default or '')

    return ENV_PLACEHOLDER_PATTERN.sub(lookup, text)


def replace_env_vars(value: Any) -> Any:
    """
    递归替换配置中的环境变量占位符

    字符串中的占位符被替换；字典和列表逐项处理；其余类型原样返回。
    变量未设置且没有默认值时替换为空字符串。

    Examples:
        >>> os.environ['AUTOREPLY_MODEL'] = 'gpt-4o-mini'
        >>> replace_env_vars('${AUTOREPLY_MODEL}')
        'gpt-4o-mini'
        >>> replace_env_vars({'threshold': '${MISSING_VAR:50}'})
        {'threshold': '50'}
    """
    if isinstance(value, str):
        return _substitute(value)
    if isinstance(value, dict):
        return {key: replace_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [replace_env_vars(item) for item in value]
    return value


def load_config(config_path: str = "config.yaml", env_path: str | None = None) -> dict:
    """
    读取配置文件

    先载入 .env，再解析 YAML 并替换占位符。空文件返回空字典。

    Args:
        config_path: YAML 配置文件路径
        env_path: .env 文件路径，None 表示自动查找

    Raises:
        FileNotFoundError: 配置文件不存在
        yaml.YAMLError: YAML 格式错误
    """
    load_env_file(env_path)

    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"配置文件不存在: {config_path}")

    raw = yaml.safe_load(path.read_text(encoding='utf-8'))
    return replace_env_vars(raw) if raw else {}


def get_config_value(config: dict, key_path: str, default: Any = None) -> Any:
    """
    按点分隔路径读取嵌套配置

    Examples:
        >>> config = {'auto_reply': {'decision': {'confidence_threshold': 60}}}
        >>> get_config_value(config, 'auto_reply.decision.confidence_threshold')
        60
        >>> get_config_value(config, 'auto_reply.missing', 'default')
        'default'
    """
    node: Any = config
    for key in key_path.split('.'):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node
