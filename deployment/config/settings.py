# 渐进式发布控制器 - 配置模块
"""应用配置"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置"""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # 基础配置
    APP_NAME: str = "渐进式发布控制器"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"

    # 服务器配置
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # 集群配置
    KUBE_CONFIG_PATH: Optional[str] = None
    KUBE_IN_CLUSTER: bool = False
    KUBE_NAMESPACE: str = "default"
    KUBE_REQUEST_TIMEOUT: float = 10.0

    # 指标源配置
    PROMETHEUS_URL: str = "http://localhost:9090"
    PROMETHEUS_TIMEOUT: float = 5.0
    PROMQL_SUCCESS: str = (
        'sum(increase(http_requests_total{{{selector},code!~"5.."}}[{window}s]))'
    )
    PROMQL_ERRORS: str = (
        'sum(increase(http_requests_total{{{selector},code=~"5.."}}[{window}s]))'
    )
    PROMQL_LATENCY: str = (
        "histogram_quantile({quantile}, sum(rate("
        "http_request_duration_seconds_bucket{{{selector}}}[{window}s])) by (le)) * 1000"
    )

    # 状态存储
    STATE_DIR: str = "./rollout_state"

    # 控制循环
    TICK_INTERVAL_SECONDS: float = 10.0

    # 健康策略默认值
    BAKE_TIME_SECONDS: int = 60
    MAX_BAKE_EXTENSIONS: int = 3
    SAMPLE_WINDOW_SECONDS: int = 30
    ERROR_RATE_DELTA: float = Field(default=0.01, ge=0)
    LATENCY_DELTA_MS: float = Field(default=100.0, ge=0)
    MIN_REQUESTS_PER_SAMPLE: int = 20
    MIN_SAMPLES: int = 3
    CONSECUTIVE_BREACH_LIMIT: int = 3
    HEALTH_WINDOW_MAX_SAMPLES: int = 120

    # 重试（指数退避）
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_MIN_WAIT: float = 0.5
    RETRY_MAX_WAIT: float = 8.0

    # 策略默认参数
    ROLLING_MAX_SURGE: int = 1
    ROLLING_MAX_UNAVAILABLE: int = 0
    DEFAULT_CANARY_STEPS: List[int] = [10, 25, 50, 100]

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
