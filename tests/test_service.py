# 渐进式发布控制器 - 运维操作测试
"""service模块测试"""

import pytest

from conftest import CANDIDATE, STABLE, make_rollout
from deployment.config import Settings
from deployment.exceptions import (
    ClusterNotFoundError,
    ConfigurationError,
    ConflictError,
    MetricsUnavailableError,
    RolloutException,
    RolloutNotFoundError,
    StoreUnavailableError,
    TerminalRolloutError,
    TransientClusterError,
)
from deployment.rollout.models import Revision, RolloutPhase
from deployment.rollout.service import (
    ResultCode,
    RolloutService,
    ServiceResult,
    result_code_for,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def settings(tmp_path):
    return Settings(STATE_DIR=str(tmp_path / "state"))


@pytest.fixture
def service(controller, settings):
    return RolloutService(controller, settings)


class TestResultCodes:
    """结果码测试"""

    async def test_exception_mapping(self):
        """测试异常到结果码的映射"""
        assert result_code_for(RolloutNotFoundError("x")) == ResultCode.NOT_FOUND
        assert result_code_for(ClusterNotFoundError("Deployment", "web")) == ResultCode.NOT_FOUND
        assert result_code_for(ConflictError()) == ResultCode.CONFLICT
        assert result_code_for(TerminalRolloutError()) == ResultCode.CONFLICT
        assert result_code_for(ConfigurationError()) == ResultCode.POLICY_REJECTED
        assert result_code_for(StoreUnavailableError()) == ResultCode.UNAVAILABLE
        assert result_code_for(MetricsUnavailableError()) == ResultCode.UNAVAILABLE
        assert result_code_for(RolloutException()) == ResultCode.ERROR

    async def test_exit_codes(self):
        """测试命令行退出码"""
        assert ResultCode.SUCCESS.exit_code == 0
        assert ResultCode.NOT_FOUND.exit_code == 3
        assert ResultCode.CONFLICT.exit_code == 4
        assert ResultCode.POLICY_REJECTED.exit_code == 5
        assert ResultCode.UNAVAILABLE.exit_code == 6

    async def test_result_dict(self):
        """测试结果序列化"""
        result = ServiceResult.failure(ConflictError("已有发布", detail={"rollout_id": "abc"}))
        assert result.to_dict() == {
            "code": 409,
            "result": "conflict",
            "message": "已有发布",
            "data": {"rollout_id": "abc"},
        }


class TestStartRollout:
    """发起发布测试"""

    async def test_start_canary(self, service, store):
        """测试发起金丝雀发布"""
        result = await service.start_rollout("web", CANDIDATE, "canary")

        assert result.ok
        assert result.data["phase"] == "initializing"
        assert result.data["step_plan"] == [10, 25, 50, 100]
        rollout = store.load("default", "web")
        assert rollout.stable.image == STABLE.image
        assert rollout.stable.labels == STABLE.labels
        assert rollout.total_replicas == 4

    async def test_second_rollout_conflicts(self, service, store):
        """测试同一工作负载的第二个发布被拒绝且不影响第一个"""
        first = await service.start_rollout("web", CANDIDATE, "canary")
        second = await service.start_rollout("web", CANDIDATE, "canary", step_plan=[50, 100])

        assert second.code == ResultCode.CONFLICT
        assert second.data["rollout_id"] == first.data["rollout_id"]
        assert store.load("default", "web").step_plan == [10, 25, 50, 100]
        assert len(store.list_all()) == 1

    async def test_unknown_strategy(self, service):
        """测试未知策略"""
        result = await service.start_rollout("web", CANDIDATE, "shadow")
        assert result.code == ResultCode.POLICY_REJECTED

    async def test_invalid_step_plan_not_persisted(self, service, store):
        """测试非法检查点被拒绝且不落盘"""
        result = await service.start_rollout("web", CANDIDATE, "canary", step_plan=[50, 20, 100])

        assert result.code == ResultCode.POLICY_REJECTED
        assert store.list_all() == []

    async def test_missing_candidate(self, service, store):
        """测试候选版Deployment不存在"""
        ghost = Revision("v3", "ghost", "registry.local/web:v3", labels={"app": "web", "version": "v3"})
        result = await service.start_rollout("web", ghost, "canary")

        assert result.code == ResultCode.POLICY_REJECTED
        assert store.list_all() == []

    async def test_missing_stable(self, service):
        """测试稳定版工作负载不存在"""
        result = await service.start_rollout("nothing", CANDIDATE, "canary")
        assert result.code == ResultCode.POLICY_REJECTED

    async def test_blue_green_defaults_to_single_step(self, service, store):
        """测试蓝绿默认检查点为 [100]"""
        result = await service.start_rollout("web", CANDIDATE, "blue-green")
        assert result.ok
        assert store.load("default", "web").step_plan == [100]

    async def test_policy_overrides(self, service, store):
        """测试健康阈值覆盖"""
        await service.start_rollout(
            "web", CANDIDATE, "canary", policy={"error_rate_delta": 0.05, "min_samples": 5}
        )
        policy = store.load("default", "web").policy
        assert policy.error_rate_delta == 0.05
        assert policy.min_samples == 5

    async def test_stable_from_last_success(self, service, store):
        """测试稳定版取最近一次成功发布的版本"""
        previous = make_rollout(
            candidate=Revision("release-7", "web", STABLE.image, labels=STABLE.labels),
            phase=RolloutPhase.SUCCEEDED,
        )
        store.save(previous)

        await service.start_rollout("web", CANDIDATE, "canary")
        assert store.load("default", "web").stable.revision_id == "release-7"

    async def test_rejected_while_halted(self, service, controller):
        """测试存储不可用时拒绝新发布"""
        controller.halted = True
        result = await service.start_rollout("web", CANDIDATE, "canary")
        assert result.code == ResultCode.UNAVAILABLE

    async def test_transient_cluster_error_retried(self, service, cluster, store):
        """测试读取工作负载的瞬时错误被重试，发布正常创建"""
        cluster.fail("get_workload", TransientClusterError("抖动"))
        cluster.fail("list_pods", TransientClusterError("抖动"))
        result = await service.start_rollout("web", CANDIDATE, "canary", step_plan=[20, 50, 100])

        assert result.ok
        assert store.load("default", "web") is not None

    async def test_transient_cluster_error_exhausted(self, service, cluster, store):
        """测试重试耗尽后返回不可用且不落盘"""
        cluster.fail("get_workload", *[TransientClusterError("不可达") for _ in range(3)])
        result = await service.start_rollout("web", CANDIDATE, "canary")

        assert result.code == ResultCode.UNAVAILABLE
        assert store.list_all() == []

    async def test_rolling_without_labels_succeeds(self, service, controller, store):
        """测试滚动更新未提供标签时取Deployment的Pod标签并完成发布"""
        candidate = Revision("v2", "web", CANDIDATE.image)
        result = await service.start_rollout(
            "web", candidate, "rolling", bake_seconds=0, policy={"min_samples": 1}
        )
        assert result.ok

        rollout = store.load("default", "web")
        assert rollout.candidate.labels == STABLE.labels

        await controller.tick()
        await controller.tick()
        final = store.get(rollout.rollout_id)
        assert final.phase == RolloutPhase.SUCCEEDED

    async def test_candidate_labels_from_deployment(self, service, store):
        """测试金丝雀候选版未提供标签时取其Deployment的Pod标签"""
        candidate = Revision("v2", "web-v2", CANDIDATE.image)
        result = await service.start_rollout("web", candidate, "canary")

        assert result.ok
        assert store.load("default", "web").candidate.labels == CANDIDATE.labels


class TestOperations:
    """查询、中止与推进测试"""

    async def test_status(self, service):
        """测试查询发布状态"""
        started = await service.start_rollout("web", CANDIDATE, "canary")
        result = service.get_status(started.data["rollout_id"])
        assert result.ok
        assert result.data["candidate_revision"] == "v2"

    async def test_status_not_found(self, service):
        """测试查询不存在的发布"""
        assert service.get_status("missing").code == ResultCode.NOT_FOUND

    async def test_abort_then_terminal(self, service, controller):
        """测试中止后再次中止返回冲突"""
        started = await service.start_rollout("web", CANDIDATE, "canary")
        rollout_id = started.data["rollout_id"]

        result = await service.abort(rollout_id)
        assert result.ok
        assert result.data["abort_requested"] is True

        await controller.tick()
        assert service.get_status(rollout_id).data["phase"] == "aborted"
        assert (await service.abort(rollout_id)).code == ResultCode.CONFLICT

    async def test_promote_missing(self, service):
        """测试推进不存在的发布"""
        assert (await service.promote("missing")).code == ResultCode.NOT_FOUND

    async def test_list_and_history(self, service, store):
        """测试列出发布与历史"""
        store.save(make_rollout(phase=RolloutPhase.ROLLED_BACK))
        await service.start_rollout("web", CANDIDATE, "canary")

        assert len(service.list_rollouts().data) == 2
        assert len(service.list_rollouts(active_only=True).data) == 1
        history = service.history("default", "web").data
        assert [h["phase"] for h in history] == ["rolled_back"]
