# 渐进式发布控制器 - 配置模块
"""配置文件入口"""

from .logging import bind_rollout_context, get_logger, setup_logging
from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "bind_rollout_context",
    "get_logger",
]
