# 渐进式发布控制器 - 集群调用重试
"""瞬时集群错误的有界指数退避重试"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from deployment.exceptions import TransientClusterError

logger = structlog.get_logger()


@dataclass
class RetryConfig:
    """重试配置"""
    # 单个集群调用的最大尝试次数
    max_attempts: int = 5
    # 指数退避的初始等待（秒）
    min_wait: float = 0.5
    # 指数退避的等待上限（秒）
    max_wait: float = 8.0

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            min_wait=settings.RETRY_MIN_WAIT,
            max_wait=settings.RETRY_MAX_WAIT,
        )


async def call_with_retry(
    config: Optional[RetryConfig],
    action: str,
    func: Callable[..., Awaitable[Any]],
    *args,
) -> Any:
    """
    调用集群操作，仅对 TransientClusterError 重试

    config 为 None 时只调用一次；重试耗尽后原样抛出最后一次的错误。
    """
    if config is None:
        return await func(*args)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.min_wait,
            min=config.min_wait,
            max=config.max_wait,
        ),
        retry=retry_if_exception_type(TransientClusterError),
        before_sleep=lambda state: logger.warning(
            "集群调用失败，准备重试",
            action=action,
            attempt=state.attempt_number,
            error=str(state.outcome.exception()),
        ),
        reraise=True,
    )
    return await retrying(func, *args)
