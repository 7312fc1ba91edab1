# 渐进式发布控制器 - 发布模块
"""发布状态机、流量管理、回滚与状态存储"""

from .cluster import ClusterClient, KubernetesClusterClient, PodStatus, WorkloadStatus
from .controller import ProgressionController, WorkloadLease
from .metrics import MetricsSource, PrometheusMetricsSource
from .models import (
    HealthPolicy,
    HealthSample,
    Revision,
    Rollout,
    RolloutEvent,
    RolloutPhase,
    StrategyKind,
    TrafficWeight,
)
from .policy import HealthWindow, Verdict, judge_sample
from .retry import RetryConfig, call_with_retry
from .rollback import RollbackEngine, RollbackReason
from .service import ResultCode, RolloutService, ServiceResult
from .store import FileRolloutStore, RolloutStore
from .traffic import TrafficSplitter

__all__ = [
    "ClusterClient",
    "KubernetesClusterClient",
    "PodStatus",
    "WorkloadStatus",
    "ProgressionController",
    "WorkloadLease",
    "MetricsSource",
    "PrometheusMetricsSource",
    "HealthPolicy",
    "HealthSample",
    "Revision",
    "Rollout",
    "RolloutEvent",
    "RolloutPhase",
    "StrategyKind",
    "TrafficWeight",
    "HealthWindow",
    "Verdict",
    "judge_sample",
    "RetryConfig",
    "call_with_retry",
    "RollbackEngine",
    "RollbackReason",
    "ResultCode",
    "RolloutService",
    "ServiceResult",
    "FileRolloutStore",
    "RolloutStore",
    "TrafficSplitter",
]
