# 渐进式发布控制器 - 集群客户端
"""编排API的薄封装：查询工作负载、列出Pod、扩缩容、修改选择器与路由权重"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.exceptions import ApiException

from deployment.exceptions import (
    ClusterNotFoundError,
    ConfigurationError,
    TransientClusterError,
)

logger = structlog.get_logger()


IMAGE_PULL_FAILURES = frozenset({
    "ErrImagePull",
    "ImagePullBackOff",
    "InvalidImageName",
    "ErrImageNeverPull",
})


@dataclass
class WorkloadStatus:
    """Deployment 状态快照"""
    name: str
    namespace: str
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    available_replicas: int = 0
    generation_observed: bool = True
    images: Dict[str, str] = field(default_factory=dict)  # 容器名 -> 镜像
    labels: Dict[str, str] = field(default_factory=dict)  # Pod模板标签

    def image_for(self, container: Optional[str] = None) -> Optional[str]:
        if container:
            return self.images.get(container)
        return next(iter(self.images.values()), None)

    @property
    def rollout_complete(self) -> bool:
        """原生滚动更新是否已完成"""
        return (
            self.generation_observed
            and self.updated_replicas >= self.replicas
            and self.available_replicas >= self.replicas
        )


@dataclass
class PodStatus:
    """Pod 就绪状态"""
    name: str
    ready: bool = False
    phase: str = "Unknown"
    waiting_reason: Optional[str] = None

    @property
    def image_pull_failed(self) -> bool:
        return self.waiting_reason in IMAGE_PULL_FAILURES


class ClusterClient(ABC):
    """集群客户端接口"""

    @abstractmethod
    async def get_workload(self, namespace: str, name: str) -> WorkloadStatus:
        """获取工作负载"""

    @abstractmethod
    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodStatus]:
        """按标签列出Pod及就绪状态"""

    @abstractmethod
    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        """调整副本数"""

    @abstractmethod
    async def patch_selector(self, namespace: str, service: str, selector: Dict[str, str]) -> None:
        """修改Service选择器"""

    @abstractmethod
    async def patch_route_weights(self, namespace: str, route: str, weights: Dict[str, int]) -> None:
        """修改加权路由规则（子集 -> 权重）"""

    @abstractmethod
    async def patch_rolling_update(
        self,
        namespace: str,
        name: str,
        image: str,
        container: Optional[str],
        max_surge: int,
        max_unavailable: int,
    ) -> None:
        """触发原生滚动更新"""

    async def close(self) -> None:
        """释放连接"""


def translate_api_error(exc: BaseException, kind: str, name: str) -> Optional[Exception]:
    """把底层异常映射为发布异常，无法识别时返回None"""
    if isinstance(exc, ApiException):
        status = exc.status or 0
        if status == 404:
            return ClusterNotFoundError(kind, name)
        if status in (0, 409, 429) or status >= 500:
            return TransientClusterError(
                f"{kind} {name} 请求失败: {status} {exc.reason}"
            )
        return ConfigurationError(f"{kind} {name} 请求被拒绝: {status} {exc.reason}")
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, OSError)):
        return TransientClusterError(f"{kind} {name} 连接失败: {exc}")
    return None


class KubernetesClusterClient(ClusterClient):
    """基于 kubernetes_asyncio 的集群客户端"""

    # Istio VirtualService
    ROUTE_GROUP = "networking.istio.io"
    ROUTE_VERSION = "v1beta1"
    ROUTE_PLURAL = "virtualservices"

    def __init__(
        self,
        config_file: Optional[str] = None,
        in_cluster: bool = False,
        request_timeout: float = 10.0,
    ):
        self.config_file = config_file
        self.in_cluster = in_cluster
        self.request_timeout = request_timeout
        self._api: Optional[client.ApiClient] = None

    @classmethod
    def from_settings(cls, settings) -> "KubernetesClusterClient":
        return cls(
            config_file=settings.KUBE_CONFIG_PATH,
            in_cluster=settings.KUBE_IN_CLUSTER,
            request_timeout=settings.KUBE_REQUEST_TIMEOUT,
        )

    async def connect(self) -> None:
        """加载kubeconfig并创建ApiClient"""
        if self._api is not None:
            return
        if self.in_cluster:
            config.load_incluster_config()
        else:
            await config.load_kube_config(config_file=self.config_file)
        self._api = client.ApiClient()
        logger.info("集群客户端已连接", in_cluster=self.in_cluster)

    async def close(self) -> None:
        if self._api is not None:
            await self._api.close()
            self._api = None

    @asynccontextmanager
    async def _request(self, kind: str, name: str):
        await self.connect()
        try:
            yield self._api
        except Exception as e:
            translated = translate_api_error(e, kind, name)
            if translated is None:
                raise
            logger.warning("集群请求失败", kind=kind, name=name, error=str(e))
            raise translated from e

    async def get_workload(self, namespace: str, name: str) -> WorkloadStatus:
        async with self._request("Deployment", name) as api:
            dep = await client.AppsV1Api(api).read_namespaced_deployment(
                name=name, namespace=namespace, _request_timeout=self.request_timeout
            )
        status = dep.status
        template = dep.spec.template
        return WorkloadStatus(
            name=name,
            namespace=namespace,
            replicas=dep.spec.replicas or 0,
            ready_replicas=status.ready_replicas or 0,
            updated_replicas=status.updated_replicas or 0,
            available_replicas=status.available_replicas or 0,
            generation_observed=(status.observed_generation or 0) >= (dep.metadata.generation or 0),
            images={c.name: c.image for c in template.spec.containers},
            labels=dict(template.metadata.labels or {}),
        )

    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodStatus]:
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        async with self._request("Pod", selector) as api:
            pods = await client.CoreV1Api(api).list_namespaced_pod(
                namespace=namespace,
                label_selector=selector,
                _request_timeout=self.request_timeout,
            )
        return [self._pod_status(p) for p in pods.items]

    @staticmethod
    def _pod_status(pod: Any) -> PodStatus:
        ready = any(
            c.type == "Ready" and c.status == "True"
            for c in (pod.status.conditions or [])
        )
        waiting_reason = None
        for cs in pod.status.container_statuses or []:
            if cs.state and cs.state.waiting and cs.state.waiting.reason:
                waiting_reason = cs.state.waiting.reason
                break
        return PodStatus(
            name=pod.metadata.name,
            ready=ready,
            phase=pod.status.phase or "Unknown",
            waiting_reason=waiting_reason,
        )

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        async with self._request("Deployment", name) as api:
            await client.AppsV1Api(api).patch_namespaced_deployment_scale(
                name=name,
                namespace=namespace,
                body={"spec": {"replicas": replicas}},
                _request_timeout=self.request_timeout,
            )
        logger.info("调整副本数", namespace=namespace, deployment=name, replicas=replicas)

    async def patch_selector(self, namespace: str, service: str, selector: Dict[str, str]) -> None:
        async with self._request("Service", service) as api:
            await client.CoreV1Api(api).patch_namespaced_service(
                name=service,
                namespace=namespace,
                body={"spec": {"selector": selector}},
                _request_timeout=self.request_timeout,
            )
        logger.info("切换Service选择器", namespace=namespace, service=service, selector=selector)

    async def patch_route_weights(self, namespace: str, route: str, weights: Dict[str, int]) -> None:
        async with self._request("VirtualService", route) as api:
            custom = client.CustomObjectsApi(api)
            obj = await custom.get_namespaced_custom_object(
                self.ROUTE_GROUP, self.ROUTE_VERSION, namespace, self.ROUTE_PLURAL, route
            )
            http = obj.get("spec", {}).get("http", [])
            matched = False
            for rule in http:
                for dest in rule.get("route", []):
                    subset = dest.get("destination", {}).get("subset")
                    if subset in weights:
                        dest["weight"] = weights[subset]
                        matched = True
            if not matched:
                raise ConfigurationError(
                    f"路由 {route} 中没有子集 {sorted(weights)} 的目标"
                )
            await custom.patch_namespaced_custom_object(
                self.ROUTE_GROUP, self.ROUTE_VERSION, namespace, self.ROUTE_PLURAL, route,
                {"spec": {"http": http}},
            )
        logger.info("更新路由权重", namespace=namespace, route=route, weights=weights)

    async def patch_rolling_update(
        self,
        namespace: str,
        name: str,
        image: str,
        container: Optional[str],
        max_surge: int,
        max_unavailable: int,
    ) -> None:
        if not container:
            workload = await self.get_workload(namespace, name)
            container = next(iter(workload.images), None)
            if container is None:
                raise ConfigurationError(f"Deployment {name} 没有容器")
        body = {
            "spec": {
                "strategy": {
                    "type": "RollingUpdate",
                    "rollingUpdate": {
                        "maxSurge": max_surge,
                        "maxUnavailable": max_unavailable,
                    },
                },
                "template": {
                    "spec": {"containers": [{"name": container, "image": image}]}
                },
            }
        }
        async with self._request("Deployment", name) as api:
            await client.AppsV1Api(api).patch_namespaced_deployment(
                name=name, namespace=namespace, body=body,
                _request_timeout=self.request_timeout,
            )
        logger.info(
            "触发滚动更新",
            namespace=namespace,
            deployment=name,
            image=image,
            max_surge=max_surge,
            max_unavailable=max_unavailable,
        )
