# 渐进式发布控制器 - 回滚管理测试
"""rollback模块测试"""

import pytest

from conftest import STABLE, make_rollout
from deployment.exceptions import ClusterNotFoundError, TransientClusterError
from deployment.rollout.models import StrategyKind, TrafficWeight
from deployment.rollout.retry import RetryConfig
from deployment.rollout.rollback import RollbackEngine, RollbackReason
from deployment.rollout.traffic import TrafficSplitter

pytestmark = pytest.mark.asyncio


@pytest.fixture
def engine(cluster):
    return RollbackEngine(
        cluster,
        TrafficSplitter(cluster),
        RetryConfig(max_attempts=3, min_wait=0, max_wait=0),
    )


class TestRollbackEngine:
    """回滚执行测试"""

    async def test_restores_stable_then_removes_candidate(self, engine, cluster):
        """测试先恢复稳定版再回收候选版"""
        rollout = make_rollout(traffic=TrafficWeight.for_candidate(50))
        traffic = await engine.rollback(rollout, RollbackReason.HEALTH_BREACH)

        assert traffic == TrafficWeight(100, 0)
        assert cluster.calls == [("scale", "web", 4), ("scale", "web-v2", 0)]

    async def test_blue_green_switches_selector(self, engine, cluster):
        """测试蓝绿回滚切回稳定版选择器"""
        rollout = make_rollout(strategy=StrategyKind.BLUE_GREEN, step_plan=[100])
        await engine.rollback(rollout)

        assert cluster.calls == [
            ("patch_selector", "web", STABLE.labels),
            ("scale", "web-v2", 0),
        ]

    async def test_retries_transient_errors(self, engine, cluster):
        """测试瞬时错误重试后成功"""
        cluster.fail("scale", TransientClusterError("超时"), TransientClusterError("超时"))
        await engine.rollback(make_rollout())

        assert cluster.calls == [("scale", "web", 4), ("scale", "web-v2", 0)]

    async def test_gives_up_after_max_attempts(self, engine, cluster):
        """测试重试耗尽后抛出瞬时错误"""
        cluster.fail("scale", *[TransientClusterError("不可达") for _ in range(3)])
        with pytest.raises(TransientClusterError):
            await engine.rollback(make_rollout())
        assert cluster.calls == []

    async def test_missing_candidate_is_ignored(self, engine, cluster):
        """测试候选版已被删除时回滚仍然完成"""
        del cluster.workloads["web-v2"]
        original = cluster.scale

        async def scale(namespace, name, replicas):
            if name not in cluster.workloads:
                raise ClusterNotFoundError("Deployment", name)
            await original(namespace, name, replicas)

        cluster.scale = scale
        traffic = await engine.rollback(make_rollout())
        assert traffic == TrafficWeight(100, 0)
        assert cluster.calls == [("scale", "web", 4)]

    async def test_rollback_is_idempotent(self, engine, cluster):
        """测试重复回滚结果一致"""
        rollout = make_rollout()
        first = await engine.rollback(rollout)
        second = await engine.rollback(rollout)

        assert first == second
        assert cluster.calls[:2] == cluster.calls[2:]


class TestRetryConfig:
    """重试配置测试"""

    async def test_from_settings(self):
        """测试从配置读取重试参数"""
        from deployment.config import Settings

        config = RetryConfig.from_settings(
            Settings(RETRY_MAX_ATTEMPTS=7, RETRY_MIN_WAIT=1.0, RETRY_MAX_WAIT=4.0)
        )
        assert config.max_attempts == 7
        assert config.max_wait == 4.0
