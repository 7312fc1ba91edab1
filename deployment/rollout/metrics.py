# 渐进式发布控制器 - 指标源
"""按版本查询成功数、错误数与延迟"""

import math
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from deployment.exceptions import MetricsUnavailableError

from .models import HealthSample, Revision, utcnow

logger = structlog.get_logger()


class MetricsSource(ABC):
    """指标源接口"""

    @abstractmethod
    async def query(self, revision: Revision, window_seconds: int) -> HealthSample:
        """查询某版本在时间窗口内的聚合指标"""

    async def close(self) -> None:
        """释放连接"""


class PrometheusMetricsSource(MetricsSource):
    """Prometheus HTTP API 指标源"""

    def __init__(
        self,
        base_url: str,
        success_query: str,
        error_query: str,
        latency_query: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.success_query = success_query
        self.error_query = error_query
        self.latency_query = latency_query
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "PrometheusMetricsSource":
        return cls(
            base_url=settings.PROMETHEUS_URL,
            success_query=settings.PROMQL_SUCCESS,
            error_query=settings.PROMQL_ERRORS,
            latency_query=settings.PROMQL_LATENCY,
            timeout=settings.PROMETHEUS_TIMEOUT,
            client=client,
        )

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _selector(revision: Revision) -> str:
        if not revision.labels:
            raise MetricsUnavailableError(f"版本 {revision.revision_id} 没有Pod标签，无法查询指标")
        return ",".join(f'{k}="{v}"' for k, v in sorted(revision.labels.items()))

    async def _scalar(self, promql: str) -> float:
        """执行即时查询，返回单个标量；无数据时为0"""
        try:
            response = await self.client.get(
                f"{self.base_url}/api/v1/query",
                params={"query": promql},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MetricsUnavailableError(f"Prometheus查询失败: {e}") from e

        if payload.get("status") != "success":
            raise MetricsUnavailableError(
                f"Prometheus返回错误: {payload.get('error', 'unknown')}"
            )
        result = payload.get("data", {}).get("result", [])
        if not result:
            return 0.0
        value = float(result[0]["value"][1])
        if math.isnan(value) or math.isinf(value):
            return 0.0
        return value

    async def query(self, revision: Revision, window_seconds: int) -> HealthSample:
        params = {"selector": self._selector(revision), "window": window_seconds}
        success = await self._scalar(self.success_query.format(**params))
        errors = await self._scalar(self.error_query.format(**params))
        p50 = await self._scalar(self.latency_query.format(quantile=0.5, **params))
        p99 = await self._scalar(self.latency_query.format(quantile=0.99, **params))

        sample = HealthSample(
            revision=revision.revision_id,
            success_count=success,
            error_count=errors,
            latency_p50=p50,
            latency_p99=p99,
            timestamp=utcnow(),
        )
        logger.debug(
            "采集健康样本",
            revision=revision.revision_id,
            requests=sample.total,
            error_rate=sample.error_rate,
            latency_p99=p99,
        )
        return sample
