# 渐进式发布控制器 - 测试夹具
"""集群与指标源的内存实现、控制器夹具"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from deployment.exceptions import ClusterNotFoundError, MetricsUnavailableError
from deployment.rollout.cluster import ClusterClient, PodStatus, WorkloadStatus
from deployment.rollout.controller import ProgressionController
from deployment.rollout.metrics import MetricsSource
from deployment.rollout.models import (
    HealthPolicy,
    HealthSample,
    Revision,
    Rollout,
    StrategyKind,
)
from deployment.rollout.retry import RetryConfig
from deployment.rollout.rollback import RollbackEngine
from deployment.rollout.store import FileRolloutStore
from deployment.rollout.traffic import TrafficSplitter


STABLE = Revision(
    revision_id="v1",
    deployment="web",
    image="registry.local/web:v1",
    labels={"app": "web", "version": "v1"},
)
CANDIDATE = Revision(
    revision_id="v2",
    deployment="web-v2",
    image="registry.local/web:v2",
    labels={"app": "web", "version": "v2"},
)


class FakeClusterClient(ClusterClient):
    """记录调用顺序的内存集群"""

    def __init__(self):
        self.workloads: Dict[str, WorkloadStatus] = {}
        self.pods: Dict[frozenset, List[PodStatus]] = {}
        self.calls: List[tuple] = []
        # 方法名 -> 待抛出的异常队列
        self.failures: Dict[str, List[Exception]] = {}

    def add_workload(
        self,
        name: str,
        image: str,
        replicas: int = 4,
        labels: Optional[Dict[str, str]] = None,
        namespace: str = "default",
    ) -> WorkloadStatus:
        status = WorkloadStatus(
            name=name,
            namespace=namespace,
            replicas=replicas,
            ready_replicas=replicas,
            updated_replicas=replicas,
            available_replicas=replicas,
            images={"app": image},
            labels=dict(labels or {}),
        )
        self.workloads[name] = status
        return status

    def set_pods(self, labels: Dict[str, str], pods: List[PodStatus]):
        self.pods[frozenset(labels.items())] = pods

    def fail(self, method: str, *errors: Exception):
        self.failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str):
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def get_workload(self, namespace: str, name: str) -> WorkloadStatus:
        self._maybe_fail("get_workload")
        if name not in self.workloads:
            raise ClusterNotFoundError("Deployment", name)
        return self.workloads[name]

    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodStatus]:
        self._maybe_fail("list_pods")
        key = frozenset(labels.items())
        if key in self.pods:
            return self.pods[key]
        return [PodStatus(name="pod-0", ready=True, phase="Running")]

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        self._maybe_fail("scale")
        self.calls.append(("scale", name, replicas))
        if name in self.workloads:
            self.workloads[name].replicas = replicas

    async def patch_selector(self, namespace: str, service: str, selector: Dict[str, str]) -> None:
        self._maybe_fail("patch_selector")
        self.calls.append(("patch_selector", service, dict(selector)))

    async def patch_route_weights(self, namespace: str, route: str, weights: Dict[str, int]) -> None:
        self._maybe_fail("patch_route_weights")
        self.calls.append(("patch_route_weights", route, dict(weights)))

    async def patch_rolling_update(
        self,
        namespace: str,
        name: str,
        image: str,
        container: Optional[str],
        max_surge: int,
        max_unavailable: int,
    ) -> None:
        self._maybe_fail("patch_rolling_update")
        self.calls.append(("patch_rolling_update", name, image, max_surge, max_unavailable))
        workload = self.workloads[name]
        workload.images[container or next(iter(workload.images))] = image


class FakeMetricsSource(MetricsSource):
    """按版本返回预设指标"""

    def __init__(self):
        self.samples: Dict[str, dict] = {}
        self.unavailable = False
        self.queries: List[str] = []

    def set(self, revision_id: str, requests: float = 1000, error_rate: float = 0.0, p99: float = 120.0):
        errors = requests * error_rate
        self.samples[revision_id] = {
            "success_count": requests - errors,
            "error_count": errors,
            "latency_p50": p99 / 2,
            "latency_p99": p99,
        }

    async def query(self, revision: Revision, window_seconds: int) -> HealthSample:
        self.queries.append(revision.revision_id)
        if self.unavailable:
            raise MetricsUnavailableError("Prometheus不可达")
        values = self.samples.get(revision.revision_id)
        if values is None:
            values = {"success_count": 1000, "error_count": 0, "latency_p50": 60.0, "latency_p99": 120.0}
        return HealthSample(revision=revision.revision_id, **values)


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def cluster():
    client = FakeClusterClient()
    client.add_workload("web", STABLE.image, replicas=4, labels=STABLE.labels)
    client.add_workload("web-v2", CANDIDATE.image, replicas=0, labels=CANDIDATE.labels)
    return client


@pytest.fixture
def metrics():
    return FakeMetricsSource()


@pytest.fixture
def store(tmp_path):
    return FileRolloutStore(str(tmp_path / "state"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(store, cluster, metrics, clock):
    retry = RetryConfig(max_attempts=3, min_wait=0, max_wait=0)
    splitter = TrafficSplitter(cluster)
    engine = RollbackEngine(cluster, splitter, retry)
    return ProgressionController(
        store,
        cluster,
        metrics,
        splitter=splitter,
        rollback_engine=engine,
        tick_interval=0.01,
        clock=clock,
        retry=retry,
    )


def fast_policy(**overrides) -> HealthPolicy:
    """单个样本即可判定的策略"""
    values = dict(
        error_rate_delta=0.01,
        latency_delta_ms=100.0,
        min_requests=10,
        min_samples=1,
        consecutive_breach_limit=1,
        sample_window_seconds=30,
    )
    values.update(overrides)
    return HealthPolicy(**values)


def make_rollout(**overrides) -> Rollout:
    values = dict(
        workload="web",
        stable=STABLE,
        candidate=CANDIDATE,
        strategy=StrategyKind.CANARY,
        step_plan=[20, 50, 100],
        total_replicas=4,
        bake_seconds=0,
        max_bake_extensions=2,
        policy=fast_policy(),
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return Rollout(**values)
