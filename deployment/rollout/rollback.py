# 渐进式发布控制器 - 回滚管理
"""流量切回稳定版并回收候选版"""

from enum import Enum
from typing import Optional

import structlog

from deployment.exceptions import ClusterNotFoundError

from .cluster import ClusterClient
from .models import Rollout, StrategyKind, TrafficWeight
from .retry import RetryConfig, call_with_retry
from .traffic import TrafficSplitter

logger = structlog.get_logger()


class RollbackReason(str, Enum):
    """回滚原因"""
    HEALTH_BREACH = "health_breach"           # 健康指标违规
    BAKE_EXHAUSTED = "bake_exhausted"         # 观察期延长次数耗尽仍无结论
    MANUAL = "manual"                         # 人工中止
    CANDIDATE_INVALID = "candidate_invalid"   # 候选版不可部署
    TRAFFIC_FAILED = "traffic_failed"         # 流量切换被拒绝


class RollbackEngine:
    """回滚执行器"""

    def __init__(
        self,
        cluster: ClusterClient,
        splitter: TrafficSplitter,
        config: Optional[RetryConfig] = None,
    ):
        self.cluster = cluster
        self.splitter = splitter
        self.config = config or RetryConfig()

    async def rollback(self, rollout: Rollout, reason: RollbackReason = RollbackReason.MANUAL) -> TrafficWeight:
        """
        执行回滚

        先把全部流量切回稳定版，再把候选版缩容到0。
        集群不可达时抛出 TransientClusterError，由控制器在下一轮继续。
        """
        logger.warning(
            "开始回滚",
            rollout_id=rollout.rollout_id,
            workload=rollout.workload,
            reason=reason.value,
            stable=rollout.stable.revision_id,
            candidate=rollout.candidate.revision_id,
        )

        traffic = await call_with_retry(
            self.config, "切回稳定版", self.splitter.restore_stable, rollout
        )

        # 滚动更新的候选版与稳定版是同一个Deployment
        if rollout.strategy != StrategyKind.ROLLING:
            try:
                await call_with_retry(
                    self.config,
                    "回收候选版",
                    self.cluster.scale,
                    rollout.namespace,
                    rollout.candidate.deployment,
                    0,
                )
            except ClusterNotFoundError:
                logger.info("候选版已不存在，跳过回收", deployment=rollout.candidate.deployment)

        logger.info("回滚完成", rollout_id=rollout.rollout_id, workload=rollout.workload)
        return traffic
