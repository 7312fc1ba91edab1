# 渐进式发布控制器 - 数据模型
"""发布、版本、流量权重与健康样本"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class StrategyKind(str, Enum):
    """发布策略"""
    ROLLING = "rolling"         # 滚动更新
    BLUE_GREEN = "blue-green"   # 蓝绿切换
    CANARY = "canary"           # 金丝雀


class RolloutPhase(str, Enum):
    """发布阶段"""
    INITIALIZING = "initializing"
    STEPPING = "stepping"
    ABORTING = "aborting"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({
    RolloutPhase.SUCCEEDED,
    RolloutPhase.ROLLED_BACK,
    RolloutPhase.ABORTED,
})

# 合法的阶段转换，STEPPING -> STEPPING 表示推进到下一个权重检查点
ALLOWED_TRANSITIONS = {
    RolloutPhase.INITIALIZING: {RolloutPhase.STEPPING, RolloutPhase.ABORTED},
    RolloutPhase.STEPPING: {
        RolloutPhase.STEPPING,
        RolloutPhase.ABORTING,
        RolloutPhase.SUCCEEDED,
    },
    RolloutPhase.ABORTING: {RolloutPhase.ROLLED_BACK},
}


@dataclass(frozen=True)
class Revision:
    """不可变的工作负载版本（镜像 + 配置哈希）"""
    revision_id: str
    deployment: str
    image: str
    config_hash: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    container: Optional[str] = None

    @property
    def digest(self) -> str:
        return f"{self.image}#{self.config_hash}" if self.config_hash else self.image

    @property
    def selector(self) -> str:
        """k8s标签选择器字符串"""
        return ",".join(f"{k}={v}" for k, v in sorted(self.labels.items()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision_id": self.revision_id,
            "deployment": self.deployment,
            "image": self.image,
            "config_hash": self.config_hash,
            "labels": dict(self.labels),
            "container": self.container,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Revision":
        return cls(
            revision_id=data["revision_id"],
            deployment=data["deployment"],
            image=data["image"],
            config_hash=data.get("config_hash", ""),
            labels=dict(data.get("labels") or {}),
            container=data.get("container"),
        )


@dataclass(frozen=True)
class TrafficWeight:
    """稳定版/候选版流量权重，两者之和恒为100"""
    stable_weight: int = 100
    candidate_weight: int = 0

    def __post_init__(self):
        for w in (self.stable_weight, self.candidate_weight):
            if not 0 <= w <= 100:
                raise ValueError(f"权重必须在0-100之间: {w}")
        if self.stable_weight + self.candidate_weight != 100:
            raise ValueError(
                f"权重之和必须为100: stable={self.stable_weight} "
                f"candidate={self.candidate_weight}"
            )

    @classmethod
    def for_candidate(cls, candidate_weight: int) -> "TrafficWeight":
        return cls(stable_weight=100 - candidate_weight, candidate_weight=candidate_weight)

    def to_dict(self) -> Dict[str, int]:
        return {"stable_weight": self.stable_weight, "candidate_weight": self.candidate_weight}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrafficWeight":
        return cls(int(data["stable_weight"]), int(data["candidate_weight"]))


@dataclass
class HealthSample:
    """某个版本在一个采样窗口内的健康指标"""
    revision: str
    success_count: float = 0
    error_count: float = 0
    latency_p50: float = 0.0
    latency_p99: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> float:
        return self.success_count + self.error_count

    @property
    def error_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.error_count / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision": self.revision,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "latency_p50": self.latency_p50,
            "latency_p99": self.latency_p99,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthSample":
        return cls(
            revision=data["revision"],
            success_count=data.get("success_count", 0),
            error_count=data.get("error_count", 0),
            latency_p50=data.get("latency_p50", 0.0),
            latency_p99=data.get("latency_p99", 0.0),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class HealthPolicy:
    """健康阈值策略"""
    # 候选版与稳定版错误率之差上限 (ε)
    error_rate_delta: float = 0.01
    # 候选版与稳定版P99延迟之差上限，毫秒 (δ)
    latency_delta_ms: float = 100.0
    # 单个样本的最小请求数，不足视为无结论
    min_requests: int = 20
    # 做出判定所需的最少有效样本数
    min_samples: int = 3
    # 最近连续失败样本数达到该值即判定违规
    consecutive_breach_limit: int = 3
    # 每个样本的查询窗口（秒）
    sample_window_seconds: int = 30
    # 滑动窗口最多保留的样本数
    max_window_samples: int = 120

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthPolicy":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_settings(cls, settings) -> "HealthPolicy":
        return cls(
            error_rate_delta=settings.ERROR_RATE_DELTA,
            latency_delta_ms=settings.LATENCY_DELTA_MS,
            min_requests=settings.MIN_REQUESTS_PER_SAMPLE,
            min_samples=settings.MIN_SAMPLES,
            consecutive_breach_limit=settings.CONSECUTIVE_BREACH_LIMIT,
            sample_window_seconds=settings.SAMPLE_WINDOW_SECONDS,
            max_window_samples=settings.HEALTH_WINDOW_MAX_SAMPLES,
        )


@dataclass
class RolloutEvent:
    """阶段变更事件"""
    sequence: int
    rollout_id: str
    workload: str
    from_phase: RolloutPhase
    to_phase: RolloutPhase
    candidate_weight: int
    reason: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "rollout_id": self.rollout_id,
            "workload": self.workload,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "candidate_weight": self.candidate_weight,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutEvent":
        return cls(
            sequence=data["sequence"],
            rollout_id=data["rollout_id"],
            workload=data["workload"],
            from_phase=RolloutPhase(data["from_phase"]),
            to_phase=RolloutPhase(data["to_phase"]),
            candidate_weight=data["candidate_weight"],
            reason=data.get("reason", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class Rollout:
    """一次渐进式发布"""
    workload: str
    stable: Revision
    candidate: Revision
    strategy: StrategyKind
    step_plan: List[int]
    namespace: str = "default"
    rollout_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    service: Optional[str] = None
    route: Optional[str] = None
    phase: RolloutPhase = RolloutPhase.INITIALIZING
    candidate_weight: int = 0
    traffic: TrafficWeight = field(default_factory=TrafficWeight)
    step_index: int = -1
    bake_seconds: int = 60
    max_bake_extensions: int = 3
    bake_extensions: int = 0
    step_started_at: Optional[datetime] = None
    total_replicas: int = 0
    max_surge: int = 1
    max_unavailable: int = 0
    policy: HealthPolicy = field(default_factory=HealthPolicy)
    baseline: Optional[HealthSample] = None
    abort_requested: bool = False
    promote_requested: bool = False
    reason: str = ""
    events: List[RolloutEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.service:
            self.service = self.workload

    @property
    def key(self) -> str:
        """工作负载唯一键"""
        return f"{self.namespace}/{self.workload}"

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def is_last_step(self) -> bool:
        return self.step_index == len(self.step_plan) - 1

    @property
    def uses_weighted_route(self) -> bool:
        return self.strategy == StrategyKind.CANARY and bool(self.route)

    def bake_deadline(self) -> Optional[datetime]:
        """当前检查点的观察截止时间（含已延长次数）"""
        if self.step_started_at is None:
            return None
        return self.step_started_at + timedelta(
            seconds=self.bake_seconds * (1 + self.bake_extensions)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollout_id": self.rollout_id,
            "workload": self.workload,
            "namespace": self.namespace,
            "service": self.service,
            "route": self.route,
            "stable": self.stable.to_dict(),
            "candidate": self.candidate.to_dict(),
            "strategy": self.strategy.value,
            "phase": self.phase.value,
            "candidate_weight": self.candidate_weight,
            "traffic": self.traffic.to_dict(),
            "step_plan": list(self.step_plan),
            "step_index": self.step_index,
            "bake_seconds": self.bake_seconds,
            "max_bake_extensions": self.max_bake_extensions,
            "bake_extensions": self.bake_extensions,
            "step_started_at": _format_dt(self.step_started_at),
            "total_replicas": self.total_replicas,
            "max_surge": self.max_surge,
            "max_unavailable": self.max_unavailable,
            "policy": self.policy.to_dict(),
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "abort_requested": self.abort_requested,
            "promote_requested": self.promote_requested,
            "reason": self.reason,
            "events": [e.to_dict() for e in self.events],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rollout":
        return cls(
            rollout_id=data["rollout_id"],
            workload=data["workload"],
            namespace=data.get("namespace", "default"),
            service=data.get("service"),
            route=data.get("route"),
            stable=Revision.from_dict(data["stable"]),
            candidate=Revision.from_dict(data["candidate"]),
            strategy=StrategyKind(data["strategy"]),
            phase=RolloutPhase(data["phase"]),
            candidate_weight=data.get("candidate_weight", 0),
            traffic=TrafficWeight.from_dict(data["traffic"]),
            step_plan=list(data["step_plan"]),
            step_index=data.get("step_index", -1),
            bake_seconds=data.get("bake_seconds", 60),
            max_bake_extensions=data.get("max_bake_extensions", 3),
            bake_extensions=data.get("bake_extensions", 0),
            step_started_at=_parse_dt(data.get("step_started_at")),
            total_replicas=data.get("total_replicas", 0),
            max_surge=data.get("max_surge", 1),
            max_unavailable=data.get("max_unavailable", 0),
            policy=HealthPolicy.from_dict(data.get("policy") or {}),
            baseline=HealthSample.from_dict(data["baseline"]) if data.get("baseline") else None,
            abort_requested=data.get("abort_requested", False),
            promote_requested=data.get("promote_requested", False),
            reason=data.get("reason", ""),
            events=[RolloutEvent.from_dict(e) for e in data.get("events", [])],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def get_status(self) -> Dict[str, Any]:
        """获取状态摘要"""
        return {
            "rollout_id": self.rollout_id,
            "workload": self.workload,
            "namespace": self.namespace,
            "strategy": self.strategy.value,
            "phase": self.phase.value,
            "candidate_weight": self.candidate_weight,
            "traffic": self.traffic.to_dict(),
            "step_plan": list(self.step_plan),
            "step_index": self.step_index,
            "stable_revision": self.stable.revision_id,
            "candidate_revision": self.candidate.revision_id,
            "bake_extensions": self.bake_extensions,
            "abort_requested": self.abort_requested,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "events": [e.to_dict() for e in self.events[-20:]],
        }
