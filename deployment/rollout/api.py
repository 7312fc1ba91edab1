# 渐进式发布控制器 - HTTP接口
"""发布操作的REST接口与应用工厂"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from deployment.config import Settings, get_settings, setup_logging
from deployment.exceptions.handlers import register_exception_handlers

from .cluster import KubernetesClusterClient
from .controller import ProgressionController
from .metrics import PrometheusMetricsSource
from .models import Revision
from .service import RolloutService, ServiceResult
from .store import FileRolloutStore

logger = structlog.get_logger()


# ==================== 请求模式 ====================

class RevisionSpec(BaseModel):
    """版本描述"""
    revision_id: str = Field(..., min_length=1)
    deployment: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    config_hash: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    container: Optional[str] = None

    def to_revision(self) -> Revision:
        return Revision(**self.model_dump())


class PolicyOverrides(BaseModel):
    """健康阈值覆盖"""
    error_rate_delta: Optional[float] = Field(None, ge=0)
    latency_delta_ms: Optional[float] = Field(None, ge=0)
    min_requests: Optional[int] = Field(None, ge=0)
    min_samples: Optional[int] = Field(None, ge=1)
    consecutive_breach_limit: Optional[int] = Field(None, ge=0)
    sample_window_seconds: Optional[int] = Field(None, ge=1)


class StartRolloutRequest(BaseModel):
    """发起发布"""
    workload: str = Field(..., min_length=1)
    candidate: RevisionSpec
    strategy: str = Field(..., description="rolling / blue-green / canary")
    step_plan: Optional[List[int]] = None
    namespace: Optional[str] = None
    stable: Optional[RevisionSpec] = None
    service: Optional[str] = None
    route: Optional[str] = None
    bake_seconds: Optional[int] = Field(None, ge=0)
    max_bake_extensions: Optional[int] = Field(None, ge=0)
    max_surge: Optional[int] = None
    max_unavailable: Optional[int] = None
    policy: Optional[PolicyOverrides] = None


# ==================== 路由 ====================

router = APIRouter(tags=["rollouts"])


def _respond(result: ServiceResult, created: bool = False) -> JSONResponse:
    status_code = 201 if created and result.ok else result.code.http_status
    return JSONResponse(status_code=status_code, content=result.to_dict())


def get_service(request: Request) -> RolloutService:
    return request.app.state.service


@router.post("/rollouts")
async def start_rollout(body: StartRolloutRequest, request: Request):
    """发起发布"""
    policy: Optional[Dict[str, Any]] = None
    if body.policy is not None:
        policy = body.policy.model_dump(exclude_none=True)
    result = await get_service(request).start_rollout(
        workload=body.workload,
        candidate=body.candidate.to_revision(),
        strategy=body.strategy,
        step_plan=body.step_plan,
        namespace=body.namespace,
        stable=body.stable.to_revision() if body.stable else None,
        service=body.service,
        route=body.route,
        bake_seconds=body.bake_seconds,
        max_bake_extensions=body.max_bake_extensions,
        max_surge=body.max_surge,
        max_unavailable=body.max_unavailable,
        policy=policy,
    )
    return _respond(result, created=True)


@router.get("/rollouts")
async def list_rollouts(request: Request, active: bool = Query(False)):
    """列出发布"""
    return _respond(get_service(request).list_rollouts(active_only=active))


@router.get("/rollouts/{rollout_id}")
async def get_rollout(rollout_id: str, request: Request):
    """查询发布状态"""
    return _respond(get_service(request).get_status(rollout_id))


@router.post("/rollouts/{rollout_id}/abort")
async def abort_rollout(rollout_id: str, request: Request):
    """中止发布"""
    return _respond(await get_service(request).abort(rollout_id))


@router.post("/rollouts/{rollout_id}/promote")
async def promote_rollout(rollout_id: str, request: Request):
    """人工推进"""
    return _respond(await get_service(request).promote(rollout_id))


@router.get("/workloads/{namespace}/{workload}/history")
async def workload_history(namespace: str, workload: str, request: Request):
    """工作负载发布历史"""
    return _respond(get_service(request).history(namespace, workload))


# ==================== 应用工厂 ====================

def build_controller(settings: Settings) -> ProgressionController:
    """按配置组装控制器"""
    store = FileRolloutStore(settings.STATE_DIR)
    cluster = KubernetesClusterClient.from_settings(settings)
    metrics = PrometheusMetricsSource.from_settings(settings)
    return ProgressionController.from_settings(settings, store, cluster, metrics)


def create_app(
    settings: Optional[Settings] = None,
    controller: Optional[ProgressionController] = None,
    run_loop: bool = True,
) -> FastAPI:
    """创建应用；lifespan 中恢复进行中的发布并启动推进循环"""
    settings = settings or get_settings()
    controller = controller or build_controller(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("启动渐进式发布控制器", version=settings.APP_VERSION)
        if run_loop:
            await controller.start()
        else:
            controller.resume()
        yield
        await controller.stop()
        await controller.cluster.close()
        await controller.metrics.close()
        logger.info("控制器已关闭")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.controller = controller
    app.state.service = RolloutService(controller, settings)

    register_exception_handlers(app)
    app.include_router(router, prefix=settings.API_PREFIX)

    @app.get("/health", tags=["health"])
    async def health():
        """健康检查"""
        status = "degraded" if controller.halted else "healthy"
        return JSONResponse(
            status_code=503 if controller.halted else 200,
            content={"status": status, "version": settings.APP_VERSION},
        )

    return app


def main():
    """以配置启动HTTP服务"""
    import uvicorn

    settings = get_settings()
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.LOG_FORMAT == "json",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
    )
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT)
