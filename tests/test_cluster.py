# 渐进式发布控制器 - 集群客户端测试
"""cluster模块测试"""

import asyncio
from types import SimpleNamespace

import aiohttp
import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from deployment.exceptions import (
    ClusterNotFoundError,
    ConfigurationError,
    TransientClusterError,
)
from deployment.rollout import cluster as cluster_module
from deployment.rollout.cluster import (
    KubernetesClusterClient,
    WorkloadStatus,
    translate_api_error,
)


def make_deployment(replicas=3, updated=3, available=3, generation=2, observed=2):
    container = SimpleNamespace(name="app", image="registry.local/web:v2")
    return SimpleNamespace(
        metadata=SimpleNamespace(generation=generation),
        spec=SimpleNamespace(
            replicas=replicas,
            template=SimpleNamespace(
                metadata=SimpleNamespace(labels={"app": "web"}),
                spec=SimpleNamespace(containers=[container]),
            ),
        ),
        status=SimpleNamespace(
            ready_replicas=available,
            updated_replicas=updated,
            available_replicas=available,
            observed_generation=observed,
        ),
    )


def make_pod(name, ready=True, waiting=None):
    state = SimpleNamespace(waiting=SimpleNamespace(reason=waiting) if waiting else None)
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(
            phase="Running" if ready else "Pending",
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
            container_statuses=[SimpleNamespace(state=state)],
        ),
    )


@pytest.fixture
def kube():
    client = KubernetesClusterClient()
    # 跳过kubeconfig加载
    client._api = SimpleNamespace()
    return client


class TestTranslateApiError:
    """底层异常映射测试"""

    def test_not_found(self):
        """测试404映射为资源不存在"""
        error = translate_api_error(ApiException(status=404, reason="Not Found"), "Deployment", "web")
        assert isinstance(error, ClusterNotFoundError)

    @pytest.mark.parametrize("status", [0, 409, 429, 500, 503])
    def test_transient(self, status):
        """测试可重试的状态码"""
        error = translate_api_error(ApiException(status=status, reason="x"), "Deployment", "web")
        assert isinstance(error, TransientClusterError)

    def test_rejected(self):
        """测试请求被拒绝映射为配置错误"""
        error = translate_api_error(ApiException(status=403, reason="Forbidden"), "Service", "web")
        assert isinstance(error, ConfigurationError)

    def test_connection_errors(self):
        """测试连接错误可重试"""
        assert isinstance(
            translate_api_error(aiohttp.ClientConnectionError(), "Pod", "app=web"),
            TransientClusterError,
        )
        assert isinstance(
            translate_api_error(asyncio.TimeoutError(), "Pod", "app=web"),
            TransientClusterError,
        )

    def test_unknown(self):
        """测试无法识别的异常原样抛出"""
        assert translate_api_error(KeyError("x"), "Pod", "app=web") is None


class TestWorkloadStatus:
    """工作负载状态测试"""

    def test_rollout_complete(self):
        """测试滚动更新完成判定"""
        status = WorkloadStatus(name="web", namespace="default", replicas=3,
                                updated_replicas=3, available_replicas=3)
        assert status.rollout_complete
        status.updated_replicas = 2
        assert not status.rollout_complete

    def test_image_for(self):
        """测试按容器名取镜像"""
        status = WorkloadStatus(name="web", namespace="default",
                                images={"app": "a:1", "sidecar": "b:1"})
        assert status.image_for() == "a:1"
        assert status.image_for("sidecar") == "b:1"
        assert status.image_for("missing") is None


class TestKubernetesClusterClient:
    """Kubernetes客户端测试"""

    async def test_get_workload(self, kube, monkeypatch):
        """测试读取Deployment"""
        class FakeApps:
            def __init__(self, api):
                pass

            async def read_namespaced_deployment(self, name, namespace, **kwargs):
                return make_deployment(updated=2, observed=1)

        monkeypatch.setattr(cluster_module.client, "AppsV1Api", FakeApps)
        status = await kube.get_workload("default", "web")

        assert status.replicas == 3
        assert status.images == {"app": "registry.local/web:v2"}
        assert status.labels == {"app": "web"}
        assert not status.generation_observed
        assert not status.rollout_complete

    async def test_get_workload_not_found(self, kube, monkeypatch):
        """测试Deployment不存在"""
        class FakeApps:
            def __init__(self, api):
                pass

            async def read_namespaced_deployment(self, name, namespace, **kwargs):
                raise ApiException(status=404, reason="Not Found")

        monkeypatch.setattr(cluster_module.client, "AppsV1Api", FakeApps)
        with pytest.raises(ClusterNotFoundError):
            await kube.get_workload("default", "web")

    async def test_list_pods(self, kube, monkeypatch):
        """测试列出Pod并识别镜像拉取失败"""
        selectors = []

        class FakeCore:
            def __init__(self, api):
                pass

            async def list_namespaced_pod(self, namespace, label_selector, **kwargs):
                selectors.append(label_selector)
                return SimpleNamespace(items=[
                    make_pod("web-0"),
                    make_pod("web-1", ready=False, waiting="ImagePullBackOff"),
                ])

        monkeypatch.setattr(cluster_module.client, "CoreV1Api", FakeCore)
        pods = await kube.list_pods("default", {"version": "v2", "app": "web"})

        assert selectors == ["app=web,version=v2"]
        assert [p.ready for p in pods] == [True, False]
        assert not pods[0].image_pull_failed
        assert pods[1].image_pull_failed

    async def test_patch_route_weights(self, kube, monkeypatch):
        """测试只修改目标子集的权重"""
        patched = []
        virtual_service = {
            "spec": {
                "http": [{
                    "route": [
                        {"destination": {"host": "web", "subset": "stable"}, "weight": 100},
                        {"destination": {"host": "web", "subset": "canary"}, "weight": 0},
                    ]
                }]
            }
        }

        class FakeCustom:
            def __init__(self, api):
                pass

            async def get_namespaced_custom_object(self, *args):
                return virtual_service

            async def patch_namespaced_custom_object(self, *args):
                patched.append(args[-1])

        monkeypatch.setattr(cluster_module.client, "CustomObjectsApi", FakeCustom)
        await kube.patch_route_weights("default", "web-route", {"stable": 70, "canary": 30})

        routes = patched[0]["spec"]["http"][0]["route"]
        assert [r["weight"] for r in routes] == [70, 30]
        assert routes[0]["destination"]["host"] == "web"

    async def test_patch_route_without_subsets(self, kube, monkeypatch):
        """测试路由中没有目标子集"""
        class FakeCustom:
            def __init__(self, api):
                pass

            async def get_namespaced_custom_object(self, *args):
                return {"spec": {"http": [{"route": [{"destination": {"host": "web"}}]}]}}

            async def patch_namespaced_custom_object(self, *args):
                raise AssertionError("不应提交")

        monkeypatch.setattr(cluster_module.client, "CustomObjectsApi", FakeCustom)
        with pytest.raises(ConfigurationError):
            await kube.patch_route_weights("default", "web-route", {"stable": 100, "canary": 0})

    async def test_scale_server_error_is_transient(self, kube, monkeypatch):
        """测试扩缩容遇到5xx可重试"""
        class FakeApps:
            def __init__(self, api):
                pass

            async def patch_namespaced_deployment_scale(self, **kwargs):
                raise ApiException(status=500, reason="Internal Server Error")

        monkeypatch.setattr(cluster_module.client, "AppsV1Api", FakeApps)
        with pytest.raises(TransientClusterError):
            await kube.scale("default", "web", 2)

    async def test_rolling_update_patch(self, kube, monkeypatch):
        """测试滚动更新补丁内容"""
        bodies = []

        class FakeApps:
            def __init__(self, api):
                pass

            async def read_namespaced_deployment(self, name, namespace, **kwargs):
                return make_deployment()

            async def patch_namespaced_deployment(self, name, namespace, body, **kwargs):
                bodies.append(body)

        monkeypatch.setattr(cluster_module.client, "AppsV1Api", FakeApps)
        await kube.patch_rolling_update("default", "web", "registry.local/web:v3", None, 1, 0)

        spec = bodies[0]["spec"]
        assert spec["strategy"]["rollingUpdate"] == {"maxSurge": 1, "maxUnavailable": 0}
        assert spec["template"]["spec"]["containers"] == [
            {"name": "app", "image": "registry.local/web:v3"}
        ]
