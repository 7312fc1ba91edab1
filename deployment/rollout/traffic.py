# 渐进式发布控制器 - 流量管理
"""稳定版/候选版之间的流量分配"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from deployment.exceptions import ConfigurationError

from .cluster import ClusterClient
from .models import Rollout, StrategyKind, TrafficWeight
from .retry import RetryConfig, call_with_retry

logger = structlog.get_logger()


# 加权路由规则中的目标子集
STABLE_SUBSET = "stable"
CANARY_SUBSET = "canary"


def validate_step_plan(strategy: StrategyKind, step_plan: List[int]):
    """
    校验权重检查点

    - 蓝绿、滚动：只允许 [100]
    - 金丝雀：严格递增，取值 (0, 100]，最后一个必须是100
    """
    if not step_plan:
        raise ConfigurationError("权重检查点不能为空")
    if any(not isinstance(w, int) or isinstance(w, bool) for w in step_plan):
        raise ConfigurationError(f"权重检查点必须是整数: {step_plan}")

    if strategy in (StrategyKind.BLUE_GREEN, StrategyKind.ROLLING):
        if list(step_plan) != [100]:
            raise ConfigurationError(
                f"{strategy.value} 策略不支持中间权重，检查点只能是 [100]: {step_plan}"
            )
        return

    if any(not 0 < w <= 100 for w in step_plan):
        raise ConfigurationError(f"金丝雀权重必须在 (0, 100] 之间: {step_plan}")
    if any(a >= b for a, b in zip(step_plan, step_plan[1:])):
        raise ConfigurationError(f"金丝雀权重必须严格递增: {step_plan}")
    if step_plan[-1] != 100:
        raise ConfigurationError(f"最后一个检查点必须是100: {step_plan}")


@dataclass(frozen=True)
class ReplicaSplit:
    """按副本数近似的流量比例"""
    stable: int
    candidate: int

    @classmethod
    def for_weight(cls, total: int, candidate_weight: int) -> "ReplicaSplit":
        """
        四舍五入到最近的可行副本数

        权重大于0时候选版至少1个副本，小于100时稳定版至少保留1个副本
        """
        if candidate_weight <= 0:
            return cls(stable=total, candidate=0)
        if candidate_weight >= 100:
            return cls(stable=0, candidate=total)
        candidate = int(total * candidate_weight / 100 + 0.5)
        candidate = min(max(candidate, 1), total - 1)
        return cls(stable=total - candidate, candidate=candidate)


class TrafficSplitter:
    """流量分流器"""

    def __init__(self, cluster: ClusterClient, retry: Optional[RetryConfig] = None):
        self.cluster = cluster
        self.retry = retry

    def validate(self, rollout: Rollout):
        """发布开始前的静态检查"""
        validate_step_plan(rollout.strategy, rollout.step_plan)

        if rollout.strategy == StrategyKind.ROLLING:
            if rollout.max_surge < 0 or rollout.max_unavailable < 0:
                raise ConfigurationError("maxSurge 与 maxUnavailable 不能为负数")
            if rollout.max_surge == 0 and rollout.max_unavailable == 0:
                raise ConfigurationError("maxSurge 与 maxUnavailable 不能同时为0")
            if rollout.candidate.deployment != rollout.stable.deployment:
                raise ConfigurationError("滚动更新的候选版与稳定版必须是同一个Deployment")
            return

        if rollout.candidate.deployment == rollout.stable.deployment:
            raise ConfigurationError(
                f"{rollout.strategy.value} 策略需要独立的候选版Deployment"
            )
        if not rollout.candidate.labels or not rollout.stable.labels:
            raise ConfigurationError("候选版与稳定版都必须提供Pod标签")
        if rollout.candidate.labels == rollout.stable.labels:
            raise ConfigurationError("候选版与稳定版的Pod标签不能相同")

        if (
            rollout.strategy == StrategyKind.CANARY
            and not rollout.route
            and rollout.total_replicas < 2
        ):
            raise ConfigurationError(
                f"按副本数分流至少需要2个副本: {rollout.total_replicas}"
            )

    async def set_weight(self, rollout: Rollout, candidate_weight: int) -> TrafficWeight:
        """
        应用新的流量比例

        要么完整生效，要么失败并保持原来的比例；成功后返回实际生效的权重
        """
        try:
            target = TrafficWeight.for_candidate(candidate_weight)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        if rollout.strategy == StrategyKind.CANARY:
            if rollout.uses_weighted_route:
                apply = self._apply_route
            else:
                apply = self._apply_replicas
        else:
            if candidate_weight not in (0, 100):
                raise ConfigurationError(
                    f"{rollout.strategy.value} 策略的权重只能是0或100: {candidate_weight}"
                )
            if rollout.strategy == StrategyKind.BLUE_GREEN:
                apply = self._apply_selector
            else:
                apply = self._apply_rolling

        # 副本分流失败时已补偿回原比例，整体重试即可
        await call_with_retry(self.retry, "切换流量", apply, rollout, target)

        logger.info(
            "流量比例已生效",
            rollout_id=rollout.rollout_id,
            workload=rollout.workload,
            strategy=rollout.strategy.value,
            stable_weight=target.stable_weight,
            candidate_weight=target.candidate_weight,
        )
        return target

    async def restore_stable(self, rollout: Rollout) -> TrafficWeight:
        """全部流量切回稳定版（仅流量，不回收候选版）"""
        target = TrafficWeight()
        if rollout.strategy == StrategyKind.CANARY:
            if rollout.uses_weighted_route:
                await self._patch_route(rollout, target)
            else:
                await self.cluster.scale(
                    rollout.namespace, rollout.stable.deployment, rollout.total_replicas
                )
        elif rollout.strategy == StrategyKind.BLUE_GREEN:
            await self._apply_selector(rollout, target)
        else:
            await self._apply_rolling(rollout, target)

        logger.info("流量已切回稳定版", rollout_id=rollout.rollout_id, workload=rollout.workload)
        return target

    async def _patch_route(self, rollout: Rollout, target: TrafficWeight):
        await self.cluster.patch_route_weights(
            rollout.namespace,
            rollout.route,
            {STABLE_SUBSET: target.stable_weight, CANARY_SUBSET: target.candidate_weight},
        )

    async def _apply_route(self, rollout: Rollout, target: TrafficWeight):
        """加权路由：候选版先扩到全量，再精确调整权重"""
        if target.candidate_weight > 0:
            await self.cluster.scale(
                rollout.namespace, rollout.candidate.deployment, rollout.total_replicas
            )
        await self._patch_route(rollout, target)

    async def _apply_replicas(self, rollout: Rollout, target: TrafficWeight):
        """副本比例：先扩容后缩容，第二步失败时补偿第一步"""
        total = rollout.total_replicas
        before = ReplicaSplit.for_weight(total, rollout.traffic.candidate_weight)
        after = ReplicaSplit.for_weight(total, target.candidate_weight)

        candidate = (rollout.candidate.deployment, before.candidate, after.candidate)
        stable = (rollout.stable.deployment, before.stable, after.stable)
        if target.candidate_weight >= rollout.traffic.candidate_weight:
            steps: List[Tuple[str, int, int]] = [candidate, stable]
        else:
            steps = [stable, candidate]

        (first_name, first_before, first_after), (second_name, _, second_after) = steps
        await self.cluster.scale(rollout.namespace, first_name, first_after)
        try:
            await self.cluster.scale(rollout.namespace, second_name, second_after)
        except Exception:
            logger.warning(
                "分流未完成，恢复原副本数",
                rollout_id=rollout.rollout_id,
                deployment=first_name,
                replicas=first_before,
            )
            await self.cluster.scale(rollout.namespace, first_name, first_before)
            raise

    async def _apply_selector(self, rollout: Rollout, target: TrafficWeight):
        """蓝绿：一次性切换Service选择器"""
        revision = rollout.candidate if target.candidate_weight == 100 else rollout.stable
        await self.cluster.patch_selector(rollout.namespace, rollout.service, dict(revision.labels))

    async def _apply_rolling(self, rollout: Rollout, target: TrafficWeight):
        """滚动更新：交给编排器原生的逐步替换"""
        revision = rollout.candidate if target.candidate_weight == 100 else rollout.stable
        await self.cluster.patch_rolling_update(
            rollout.namespace,
            revision.deployment,
            revision.image,
            revision.container,
            rollout.max_surge,
            rollout.max_unavailable,
        )
