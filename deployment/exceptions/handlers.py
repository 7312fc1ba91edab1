# 渐进式发布控制器 - 异常处理器
"""FastAPI异常处理器注册，响应体与运维接口一致：code / result / message / data"""

import traceback
from typing import Union

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
import structlog

from .exceptions import RolloutException

logger = structlog.get_logger()


async def rollout_exception_handler(
    request: Request,
    exc: RolloutException
) -> JSONResponse:
    """
    发布异常处理器

    路由中未被运维服务转换的发布异常（如依赖注入阶段抛出）按其结果码返回。
    """
    logger.warning(
        "请求处理失败",
        path=request.url.path,
        method=request.method,
        result=exc.result,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """请求体校验失败，按策略拒绝处理"""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "message": error.get("msg", "验证失败"),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    logger.warning("请求参数验证失败", path=request.url.path, errors=errors)

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": 422,
            "result": "policy-rejected",
            "message": "请求参数验证失败",
            "data": None,
            "errors": errors,
        },
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """未预期的异常"""
    logger.error(
        "未处理的异常",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": 500,
            "result": "error",
            "message": "发布控制器内部错误",
            "data": None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """注册所有异常处理器"""
    app.add_exception_handler(RolloutException, rollout_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
