# 渐进式发布控制器 - 异常模块
"""自定义异常类和异常处理"""

from .exceptions import (
    RolloutException,
    TransientClusterError,
    ClusterNotFoundError,
    PolicyViolation,
    ConfigurationError,
    ConflictError,
    RolloutNotFoundError,
    InvalidTransitionError,
    TerminalRolloutError,
    StoreUnavailableError,
    MetricsUnavailableError,
)

__all__ = [
    "RolloutException",
    "TransientClusterError",
    "ClusterNotFoundError",
    "PolicyViolation",
    "ConfigurationError",
    "ConflictError",
    "RolloutNotFoundError",
    "InvalidTransitionError",
    "TerminalRolloutError",
    "StoreUnavailableError",
    "MetricsUnavailableError",
]
