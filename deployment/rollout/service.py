# 渐进式发布控制器 - 运维操作
"""面向运维人员的操作：发起、查询、中止、推进发布"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from deployment.exceptions import (
    ClusterNotFoundError,
    ConfigurationError,
    ConflictError,
    RolloutException,
    StoreUnavailableError,
)

from .controller import ProgressionController
from .models import HealthPolicy, Revision, Rollout, StrategyKind
from .retry import call_with_retry

logger = structlog.get_logger()


class ResultCode(str, Enum):
    """操作结果码"""
    SUCCESS = "success"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    POLICY_REJECTED = "policy-rejected"
    UNAVAILABLE = "unavailable"
    ERROR = "error"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self]


EXIT_CODES = {
    ResultCode.SUCCESS: 0,
    ResultCode.ERROR: 1,
    ResultCode.NOT_FOUND: 3,
    ResultCode.CONFLICT: 4,
    ResultCode.POLICY_REJECTED: 5,
    ResultCode.UNAVAILABLE: 6,
}

HTTP_STATUS = {
    ResultCode.SUCCESS: 200,
    ResultCode.ERROR: 500,
    ResultCode.NOT_FOUND: 404,
    ResultCode.CONFLICT: 409,
    ResultCode.POLICY_REJECTED: 422,
    ResultCode.UNAVAILABLE: 503,
}


def result_code_for(exc: RolloutException) -> ResultCode:
    """异常 -> 结果码"""
    try:
        return ResultCode(exc.result)
    except ValueError:
        return ResultCode.ERROR


@dataclass
class ServiceResult:
    """操作结果"""
    code: ResultCode
    message: str = "success"
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.code == ResultCode.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.http_status,
            "result": self.code.value,
            "message": self.message,
            "data": self.data,
        }

    @classmethod
    def success(cls, data: Any = None, message: str = "success") -> "ServiceResult":
        return cls(ResultCode.SUCCESS, message, data)

    @classmethod
    def failure(cls, exc: RolloutException) -> "ServiceResult":
        return cls(result_code_for(exc), exc.message, exc.detail)


class RolloutService:
    """发布操作服务"""

    def __init__(self, controller: ProgressionController, settings):
        self.controller = controller
        self.store = controller.store
        self.cluster = controller.cluster
        self.settings = settings

    async def start_rollout(
        self,
        workload: str,
        candidate: Revision,
        strategy: str,
        step_plan: Optional[List[int]] = None,
        namespace: Optional[str] = None,
        stable: Optional[Revision] = None,
        service: Optional[str] = None,
        route: Optional[str] = None,
        bake_seconds: Optional[int] = None,
        max_bake_extensions: Optional[int] = None,
        max_surge: Optional[int] = None,
        max_unavailable: Optional[int] = None,
        policy: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult:
        """
        发起发布

        所有校验同步完成：配置错误时不落盘，冲突时不修改任何状态。
        """
        try:
            rollout = await self._build_rollout(
                workload=workload,
                candidate=candidate,
                strategy=strategy,
                step_plan=step_plan,
                namespace=namespace or self.settings.KUBE_NAMESPACE,
                stable=stable,
                service=service,
                route=route,
                bake_seconds=bake_seconds,
                max_bake_extensions=max_bake_extensions,
                max_surge=max_surge,
                max_unavailable=max_unavailable,
                policy=policy,
            )
            await self.controller.admit(rollout)
        except RolloutException as e:
            logger.warning("发起发布被拒绝", workload=workload, error=e.message)
            return ServiceResult.failure(e)
        return ServiceResult.success(rollout.get_status(), message="发布已创建")

    async def _build_rollout(
        self,
        workload: str,
        candidate: Revision,
        strategy: str,
        step_plan: Optional[List[int]],
        namespace: str,
        stable: Optional[Revision],
        service: Optional[str],
        route: Optional[str],
        bake_seconds: Optional[int],
        max_bake_extensions: Optional[int],
        max_surge: Optional[int],
        max_unavailable: Optional[int],
        policy: Optional[Dict[str, Any]],
    ) -> Rollout:
        if self.controller.halted:
            raise StoreUnavailableError("状态存储不可用，拒绝新的发布")
        try:
            kind = StrategyKind(strategy)
        except ValueError as e:
            raise ConfigurationError(f"未知的发布策略: {strategy}") from e

        active = self.store.load(namespace, workload)
        if active is not None:
            raise ConflictError(
                f"工作负载 {namespace}/{workload} 已有进行中的发布 {active.rollout_id}",
                detail={"rollout_id": active.rollout_id},
            )

        if step_plan is None:
            step_plan = list(self.settings.DEFAULT_CANARY_STEPS) if kind == StrategyKind.CANARY else [100]

        stable_deployment = stable.deployment if stable else workload
        stable_status = await self._get_workload(namespace, stable_deployment, "稳定版")
        if stable is None:
            stable = self._resolve_stable(namespace, workload, candidate, stable_status)

        if not candidate.labels:
            # 未提供标签时取候选Deployment的Pod模板标签，指标查询与就绪检查都依赖它
            if candidate.deployment == stable_deployment:
                candidate_status = stable_status
            else:
                candidate_status = await self._get_workload(namespace, candidate.deployment, "候选版")
            candidate = replace(candidate, labels=dict(candidate_status.labels))

        health_policy = HealthPolicy.from_settings(self.settings)
        if policy:
            health_policy = HealthPolicy.from_dict({**health_policy.to_dict(), **policy})

        rollout = Rollout(
            workload=workload,
            namespace=namespace,
            stable=stable,
            candidate=candidate,
            strategy=kind,
            step_plan=list(step_plan),
            service=service,
            route=route,
            bake_seconds=self.settings.BAKE_TIME_SECONDS if bake_seconds is None else bake_seconds,
            max_bake_extensions=(
                self.settings.MAX_BAKE_EXTENSIONS if max_bake_extensions is None else max_bake_extensions
            ),
            total_replicas=stable_status.replicas,
            max_surge=self.settings.ROLLING_MAX_SURGE if max_surge is None else max_surge,
            max_unavailable=(
                self.settings.ROLLING_MAX_UNAVAILABLE if max_unavailable is None else max_unavailable
            ),
            policy=health_policy,
        )
        if rollout.bake_seconds < 0 or rollout.max_bake_extensions < 0:
            raise ConfigurationError("观察期与延长次数不能为负数")

        self.controller.splitter.validate(rollout)
        await self.controller.check_candidate(rollout)
        return rollout

    async def _get_workload(self, namespace: str, name: str, role: str):
        try:
            return await call_with_retry(
                self.controller.retry, f"读取{role}", self.cluster.get_workload, namespace, name
            )
        except ClusterNotFoundError as e:
            raise ConfigurationError(f"{role}不可用: {e.message}") from e

    def _resolve_stable(self, namespace: str, workload: str, candidate: Revision, status) -> Revision:
        """未指定稳定版时：优先取最近一次成功发布，否则取集群中当前运行的版本"""
        image = status.image_for(candidate.container)
        last_good = self.store.last_known_good(namespace, workload)
        if last_good is not None and last_good.image == image:
            return last_good
        if image is None:
            raise ConfigurationError(f"无法确定 {workload} 当前运行的镜像")
        return Revision(
            revision_id=image.rsplit(":", 1)[-1] if ":" in image else image,
            deployment=workload,
            image=image,
            labels=dict(status.labels),
            container=candidate.container,
        )

    def get_status(self, rollout_id: str) -> ServiceResult:
        """查询发布状态"""
        try:
            rollout = self.store.get(rollout_id)
        except RolloutException as e:
            return ServiceResult.failure(e)
        return ServiceResult.success(rollout.get_status())

    async def abort(self, rollout_id: str) -> ServiceResult:
        """中止发布（在下一个安全点生效）"""
        try:
            rollout = await self.controller.request_abort(rollout_id)
        except RolloutException as e:
            return ServiceResult.failure(e)
        return ServiceResult.success(rollout.get_status(), message="已请求中止")

    async def promote(self, rollout_id: str) -> ServiceResult:
        """跳过当前检查点剩余的观察期"""
        try:
            rollout = await self.controller.request_promote(rollout_id)
        except RolloutException as e:
            return ServiceResult.failure(e)
        return ServiceResult.success(rollout.get_status(), message="已请求推进")

    def list_rollouts(self, active_only: bool = False) -> ServiceResult:
        """列出发布"""
        try:
            rollouts = self.store.list_active() if active_only else self.store.list_all()
        except RolloutException as e:
            return ServiceResult.failure(e)
        return ServiceResult.success([r.get_status() for r in rollouts])

    def history(self, namespace: str, workload: str) -> ServiceResult:
        """工作负载的发布历史"""
        try:
            rollouts = self.store.history(namespace, workload)
        except RolloutException as e:
            return ServiceResult.failure(e)
        return ServiceResult.success([r.get_status() for r in rollouts])
