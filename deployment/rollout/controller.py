# 渐进式发布控制器 - 推进控制
"""
发布状态机

Initializing → Stepping(w1) → Stepping(w2) → ... → Succeeded
                    ↓ 健康违规 / 观察期耗尽 / 人工中止
                Aborting → RolledBack

每个发布由一个工作负载租约保护，同一时刻只有一个协程推进它；
不同发布之间并发推进、互不阻塞。
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Set

import structlog

from deployment.config import bind_rollout_context
from deployment.exceptions import (
    ClusterNotFoundError,
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    MetricsUnavailableError,
    PolicyViolation,
    RolloutException,
    StoreUnavailableError,
    TerminalRolloutError,
)

from .cluster import ClusterClient
from .metrics import MetricsSource
from .models import (
    ALLOWED_TRANSITIONS,
    Rollout,
    RolloutEvent,
    RolloutPhase,
    StrategyKind,
    utcnow,
)
from .policy import HealthWindow, SampleResult, Verdict, judge_sample
from .retry import RetryConfig, call_with_retry
from .rollback import RollbackEngine, RollbackReason
from .store import RolloutStore
from .traffic import TrafficSplitter

logger = structlog.get_logger()


class WorkloadLease:
    """按工作负载划分的互斥租约"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            yield

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: str):
        """释放已结束发布的租约"""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]


class ProgressionController:
    """发布推进控制器"""

    def __init__(
        self,
        store: RolloutStore,
        cluster: ClusterClient,
        metrics: MetricsSource,
        splitter: Optional[TrafficSplitter] = None,
        rollback_engine: Optional[RollbackEngine] = None,
        tick_interval: float = 10.0,
        clock: Callable = utcnow,
        retry: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.cluster = cluster
        self.metrics = metrics
        self.retry = retry or RetryConfig()
        self.splitter = splitter or TrafficSplitter(cluster, self.retry)
        self.rollback_engine = rollback_engine or RollbackEngine(cluster, self.splitter, self.retry)
        self.tick_interval = tick_interval
        self.clock = clock

        self.leases = WorkloadLease()
        self.halted = False

        # 仅内存：当前检查点的健康窗口、尚未落盘的中止请求
        self._windows: Dict[str, HealthWindow] = {}
        self._abort_requests: Set[str] = set()
        self._rollback_reasons: Dict[str, RollbackReason] = {}

        # 回调
        self._on_transition: List[Callable] = []

        # 运行状态
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings,
        store: RolloutStore,
        cluster: ClusterClient,
        metrics: MetricsSource,
    ) -> "ProgressionController":
        retry = RetryConfig.from_settings(settings)
        splitter = TrafficSplitter(cluster, retry)
        engine = RollbackEngine(cluster, splitter, retry)
        return cls(
            store,
            cluster,
            metrics,
            splitter=splitter,
            rollback_engine=engine,
            tick_interval=settings.TICK_INTERVAL_SECONDS,
            retry=retry,
        )

    def on_transition(self, callback: Callable):
        """注册阶段变更回调，回调参数为 RolloutEvent"""
        self._on_transition.append(callback)

    async def _call_callback(self, callback: Callable, *args):
        """调用回调"""
        try:
            if asyncio.iscoroutinefunction(callback):
                await callback(*args)
            else:
                callback(*args)
        except Exception as e:
            logger.error("回调执行失败", error=str(e))

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def resume(self) -> List[Rollout]:
        """启动时加载所有进行中的发布"""
        try:
            rollouts = self.store.list_active()
        except StoreUnavailableError as e:
            self._halt(e)
            return []
        for rollout in rollouts:
            logger.info(
                "恢复进行中的发布",
                rollout_id=rollout.rollout_id,
                workload=rollout.key,
                phase=rollout.phase.value,
                candidate_weight=rollout.candidate_weight,
            )
        return rollouts

    async def start(self):
        """启动后台推进循环"""
        if self._running:
            return
        self._running = True
        self.resume()
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("推进循环已启动", interval=self.tick_interval)

    async def stop(self):
        """停止后台推进循环"""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("推进循环已停止")

    async def _run_loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("推进循环异常，下一轮继续", error=str(e), exc_info=True)
            await asyncio.sleep(self.tick_interval)

    def _halt(self, error: Exception):
        if not self.halted:
            logger.error("状态存储不可用，暂停推进", error=str(error))
        self.halted = True

    # ------------------------------------------------------------------
    # 对外操作
    # ------------------------------------------------------------------

    async def tick(self) -> Dict[str, str]:
        """推进所有进行中的发布，返回 rollout_id -> 阶段"""
        if self.halted:
            try:
                self.store.ping()
            except StoreUnavailableError:
                return {}
            self.halted = False
            logger.info("状态存储已恢复，继续推进")

        try:
            active = self.store.list_active()
        except StoreUnavailableError as e:
            self._halt(e)
            return {}

        ids = [r.rollout_id for r in active]
        phases = await asyncio.gather(*(self._advance_isolated(i) for i in ids))
        return {i: p for i, p in zip(ids, phases) if p is not None}

    async def _advance_isolated(self, rollout_id: str) -> Optional[str]:
        """单个发布的失败不影响其他发布"""
        try:
            rollout = await self.advance(rollout_id)
            return rollout.phase.value
        except StoreUnavailableError:
            return None
        except RolloutException as e:
            logger.warning("发布推进失败，下一轮重试", rollout_id=rollout_id, error=e.message)
        except Exception as e:
            logger.error("发布推进异常", rollout_id=rollout_id, error=str(e))
        return None

    async def advance(self, rollout_id: str) -> Rollout:
        """在工作负载租约内推进一次发布"""
        if self.halted:
            raise StoreUnavailableError()
        try:
            rollout = self.store.get(rollout_id)
            if rollout.is_terminal:
                return rollout
            async with self.leases.hold(rollout.key):
                # 持有租约后重新读取，以存储中的记录为准
                rollout = self.store.get(rollout_id)
                if rollout.is_terminal:
                    return rollout
                with bind_rollout_context(rollout_id, rollout.key):
                    await self._step(rollout)
        except StoreUnavailableError as e:
            self._halt(e)
            raise

        if rollout.is_terminal:
            self._forget(rollout)
        return rollout

    async def admit(self, rollout: Rollout) -> Rollout:
        """登记新发布；同一工作负载已有进行中的发布时拒绝"""
        if self.halted:
            raise StoreUnavailableError("状态存储不可用，拒绝新的发布")
        try:
            async with self.leases.hold(rollout.key):
                active = self.store.load(rollout.namespace, rollout.workload)
                if active is not None:
                    raise ConflictError(
                        f"工作负载 {rollout.key} 已有进行中的发布 {active.rollout_id}",
                        detail={"rollout_id": active.rollout_id},
                    )
                self.store.save(rollout)
        except StoreUnavailableError as e:
            self._halt(e)
            raise

        logger.info(
            "发布已登记",
            rollout_id=rollout.rollout_id,
            workload=rollout.key,
            strategy=rollout.strategy.value,
            step_plan=rollout.step_plan,
            candidate=rollout.candidate.revision_id,
        )
        return rollout

    async def request_abort(self, rollout_id: str) -> Rollout:
        """人工中止，在下一个安全点生效"""
        self._abort_requests.add(rollout_id)
        try:
            rollout = await self._update_flags(rollout_id, abort_requested=True)
        except RolloutException:
            self._abort_requests.discard(rollout_id)
            raise
        logger.warning("收到中止请求", rollout_id=rollout_id, phase=rollout.phase.value)
        return rollout

    async def request_promote(self, rollout_id: str) -> Rollout:
        """人工确认推进：当前检查点不再等待观察期（健康违规时仍会中止）"""
        rollout = await self._update_flags(rollout_id, promote_requested=True)
        logger.info("收到推进请求", rollout_id=rollout_id, candidate_weight=rollout.candidate_weight)
        return rollout

    async def _update_flags(self, rollout_id: str, **flags) -> Rollout:
        if self.halted:
            raise StoreUnavailableError()
        try:
            rollout = self.store.get(rollout_id)
            async with self.leases.hold(rollout.key):
                rollout = self.store.get(rollout_id)
                if rollout.is_terminal:
                    raise TerminalRolloutError(
                        f"发布 {rollout_id} 已处于终态 {rollout.phase.value}"
                    )
                for name, value in flags.items():
                    setattr(rollout, name, value)
                self.store.save(rollout)
        except StoreUnavailableError as e:
            self._halt(e)
            raise
        return rollout

    async def check_candidate(self, rollout: Rollout) -> bool:
        """
        校验候选版可部署

        工作负载必须存在、镜像一致且没有镜像拉取失败的Pod。
        返回候选实例是否已就绪（只有蓝绿发布要求切换前就绪）。
        """
        try:
            workload = await call_with_retry(
                self.retry,
                "读取候选版",
                self.cluster.get_workload,
                rollout.namespace,
                rollout.candidate.deployment,
            )
        except ClusterNotFoundError as e:
            raise ConfigurationError(f"候选版不可用: {e.message}") from e

        if rollout.strategy == StrategyKind.ROLLING:
            if rollout.candidate.container and rollout.candidate.container not in workload.images:
                raise ConfigurationError(
                    f"Deployment {workload.name} 中没有容器 {rollout.candidate.container}"
                )
            return True

        image = workload.image_for(rollout.candidate.container)
        if image != rollout.candidate.image:
            raise ConfigurationError(
                f"候选版镜像不一致: 期望 {rollout.candidate.image}，实际 {image}"
            )

        pods = await call_with_retry(
            self.retry,
            "列出候选版Pod",
            self.cluster.list_pods,
            rollout.namespace,
            rollout.candidate.labels,
        )
        failed = sorted(p.name for p in pods if p.image_pull_failed)
        if failed:
            raise ConfigurationError(f"候选版镜像无法拉取: {', '.join(failed)}")

        if rollout.strategy == StrategyKind.BLUE_GREEN:
            return bool(pods) and all(p.ready for p in pods)
        return True

    # ------------------------------------------------------------------
    # 状态机
    # ------------------------------------------------------------------

    def _transition(self, rollout: Rollout, to_phase: RolloutPhase, reason: str = "") -> RolloutEvent:
        """记录一次阶段变更（尚未持久化）"""
        if to_phase not in ALLOWED_TRANSITIONS.get(rollout.phase, set()):
            raise InvalidTransitionError(
                f"不允许从 {rollout.phase.value} 转换到 {to_phase.value}"
            )
        event = RolloutEvent(
            sequence=len(rollout.events) + 1,
            rollout_id=rollout.rollout_id,
            workload=rollout.key,
            from_phase=rollout.phase,
            to_phase=to_phase,
            candidate_weight=rollout.candidate_weight,
            reason=reason,
            timestamp=self.clock(),
        )
        rollout.phase = to_phase
        rollout.reason = reason
        rollout.updated_at = event.timestamp
        rollout.events.append(event)
        return event

    async def _commit(self, rollout: Rollout, event: RolloutEvent):
        """先落盘再通知"""
        self.store.save(rollout)
        logger.info(
            "发布阶段变更",
            rollout_id=rollout.rollout_id,
            workload=event.workload,
            from_phase=event.from_phase.value,
            to_phase=event.to_phase.value,
            candidate_weight=event.candidate_weight,
            reason=event.reason,
        )
        for callback in self._on_transition:
            await self._call_callback(callback, event)

    def _abort_pending(self, rollout: Rollout) -> bool:
        if rollout.rollout_id in self._abort_requests:
            rollout.abort_requested = True
        return rollout.abort_requested

    def _window(self, rollout: Rollout) -> HealthWindow:
        window = self._windows.get(rollout.rollout_id)
        if window is None:
            retention = timedelta(
                seconds=rollout.bake_seconds * (1 + rollout.max_bake_extensions)
            )
            window = HealthWindow(rollout.policy.max_window_samples, retention or None)
            self._windows[rollout.rollout_id] = window
        return window

    def _forget(self, rollout: Rollout):
        self._windows.pop(rollout.rollout_id, None)
        self._abort_requests.discard(rollout.rollout_id)
        self._rollback_reasons.pop(rollout.rollout_id, None)
        self.leases.discard(rollout.key)

    async def _step(self, rollout: Rollout):
        if rollout.phase == RolloutPhase.INITIALIZING:
            await self._initialize(rollout)
        elif rollout.phase == RolloutPhase.STEPPING:
            await self._stepping(rollout)

        if rollout.phase == RolloutPhase.ABORTING:
            await self._rollback(rollout)

    async def _begin_abort(self, rollout: Rollout, reason: RollbackReason, message: str):
        self._rollback_reasons[rollout.rollout_id] = reason
        event = self._transition(rollout, RolloutPhase.ABORTING, message)
        await self._commit(rollout, event)

    async def _initialize(self, rollout: Rollout):
        if self._abort_pending(rollout):
            event = self._transition(rollout, RolloutPhase.ABORTED, "人工中止（尚未切换流量）")
            await self._commit(rollout, event)
            return

        try:
            ready = await self.check_candidate(rollout)
        except ConfigurationError as e:
            event = self._transition(rollout, RolloutPhase.ABORTED, e.message)
            await self._commit(rollout, event)
            return

        if not ready:
            deadline = rollout.created_at + timedelta(
                seconds=rollout.bake_seconds * (1 + rollout.max_bake_extensions)
            )
            if self.clock() >= deadline:
                event = self._transition(rollout, RolloutPhase.ABORTED, "候选实例未能在期限内就绪")
                await self._commit(rollout, event)
            else:
                logger.info("等待候选实例就绪", rollout_id=rollout.rollout_id)
            return

        try:
            rollout.baseline = await self.metrics.query(
                rollout.stable, rollout.policy.sample_window_seconds
            )
        except MetricsUnavailableError as e:
            logger.warning("稳定版基线采集失败", rollout_id=rollout.rollout_id, error=e.message)

        await self._enter_step(rollout, 0)

    async def _enter_step(self, rollout: Rollout, index: int):
        """切换到指定检查点：先落盘目标权重，再应用流量"""
        rollout.step_index = index
        rollout.candidate_weight = rollout.step_plan[index]
        rollout.bake_extensions = 0
        rollout.promote_requested = False
        rollout.step_started_at = None
        event = self._transition(
            rollout, RolloutPhase.STEPPING, f"进入检查点 {rollout.candidate_weight}%"
        )
        await self._commit(rollout, event)
        await self._converge(rollout)

    async def _converge(self, rollout: Rollout):
        """使实际生效的权重与目标检查点一致，并重新开始观察期"""
        try:
            traffic = await self.splitter.set_weight(rollout, rollout.candidate_weight)
        except (ConfigurationError, ClusterNotFoundError) as e:
            await self._begin_abort(
                rollout, RollbackReason.TRAFFIC_FAILED, f"流量切换失败: {e.message}"
            )
            return
        rollout.traffic = traffic
        rollout.step_started_at = self.clock()
        self._window(rollout).clear()
        self.store.save(rollout)

    async def _stepping(self, rollout: Rollout):
        if self._abort_pending(rollout):
            await self._begin_abort(rollout, RollbackReason.MANUAL, "人工中止")
            return

        if rollout.traffic.candidate_weight != rollout.candidate_weight or rollout.step_started_at is None:
            await self._converge(rollout)
            if rollout.phase == RolloutPhase.STEPPING and self._abort_pending(rollout):
                await self._begin_abort(rollout, RollbackReason.MANUAL, "人工中止")
            return

        try:
            result = await self._sample(rollout)
        except PolicyViolation as e:
            await self._begin_abort(rollout, RollbackReason.CANDIDATE_INVALID, e.message)
            return

        window = self._window(rollout)
        window.add(result)
        evaluation = window.evaluate(rollout.policy)
        logger.debug(
            "健康判定",
            rollout_id=rollout.rollout_id,
            candidate_weight=rollout.candidate_weight,
            verdict=evaluation.verdict.value,
            passed=evaluation.passed,
            failed=evaluation.failed,
            inconclusive=evaluation.inconclusive,
        )

        if evaluation.verdict == Verdict.BREACH:
            await self._begin_abort(rollout, RollbackReason.HEALTH_BREACH, evaluation.reason)
            return

        deadline_reached = self.clock() >= rollout.bake_deadline()
        if (evaluation.verdict == Verdict.PASS and deadline_reached) or rollout.promote_requested:
            await self._promote(rollout)
            return

        if not deadline_reached:
            return

        # 观察期结束仍无结论
        if rollout.bake_extensions >= rollout.max_bake_extensions:
            await self._begin_abort(
                rollout,
                RollbackReason.BAKE_EXHAUSTED,
                f"观察期已延长{rollout.bake_extensions}次仍无结论: {evaluation.reason}",
            )
            return
        rollout.bake_extensions += 1
        self.store.save(rollout)
        logger.info(
            "延长观察期",
            rollout_id=rollout.rollout_id,
            candidate_weight=rollout.candidate_weight,
            extensions=rollout.bake_extensions,
            reason=evaluation.reason,
        )

    async def _promote(self, rollout: Rollout):
        if rollout.is_last_step:
            event = self._transition(rollout, RolloutPhase.SUCCEEDED, "全部检查点通过")
            await self._commit(rollout, event)
            return
        await self._enter_step(rollout, rollout.step_index + 1)

    async def _sample(self, rollout: Rollout) -> SampleResult:
        """采集一对样本（候选版/稳定版）并判定"""
        ready = await self._candidate_ready(rollout)
        window_seconds = rollout.policy.sample_window_seconds
        try:
            candidate = await self.metrics.query(rollout.candidate, window_seconds)
            stable = None
            if rollout.stable.labels != rollout.candidate.labels:
                stable = await self.metrics.query(rollout.stable, window_seconds)
        except MetricsUnavailableError as e:
            return SampleResult(None, None, conclusive=False, passed=False, reasons=[e.message])
        return judge_sample(candidate, stable, rollout.policy, rollout.baseline, ready=ready)

    async def _candidate_ready(self, rollout: Rollout) -> bool:
        """候选实例是否就绪；发现镜像拉取失败时抛出 PolicyViolation"""
        if rollout.strategy == StrategyKind.ROLLING:
            workload = await self.cluster.get_workload(rollout.namespace, rollout.candidate.deployment)
            labels = rollout.candidate.labels or workload.labels
        else:
            workload = None
            labels = rollout.candidate.labels

        pods = await self.cluster.list_pods(rollout.namespace, labels)
        failed = sorted(p.name for p in pods if p.image_pull_failed)
        if failed:
            raise PolicyViolation(f"候选版镜像无法拉取: {', '.join(failed)}")

        if workload is not None:
            return (
                workload.rollout_complete
                and workload.image_for(rollout.candidate.container) == rollout.candidate.image
            )
        return bool(pods) and all(p.ready for p in pods)

    async def _rollback(self, rollout: Rollout):
        reason = self._rollback_reasons.get(rollout.rollout_id) or (
            RollbackReason.MANUAL if rollout.abort_requested else RollbackReason.HEALTH_BREACH
        )
        traffic = await self.rollback_engine.rollback(rollout, reason)
        rollout.traffic = traffic
        rollout.candidate_weight = traffic.candidate_weight
        event = self._transition(rollout, RolloutPhase.ROLLED_BACK, rollout.reason)
        await self._commit(rollout, event)
