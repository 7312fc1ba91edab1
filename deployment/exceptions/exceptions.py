# 渐进式发布控制器 - 自定义异常类
"""
发布控制异常定义

每个异常携带对外的结果码（result）与HTTP状态码，运维接口、命令行退出码
与异常处理器都以此为准。
"""

from typing import Any, Dict, List, Optional


class RolloutException(Exception):
    """
    发布异常基类

    Attributes:
        code: HTTP状态码（响应体中的 code 字段）
        result: 结果码 success / not-found / conflict / policy-rejected / unavailable / error
        message: 错误消息
        detail: 详细信息
    """
    code: int = 500
    result: str = "error"
    message: str = "发布控制器内部错误"

    def __init__(
        self,
        message: Optional[str] = None,
        detail: Optional[Any] = None,
        errors: Optional[List[Dict]] = None,
    ):
        self.message = message or self.message
        self.detail = detail
        self.errors = errors
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return self.code

    def to_dict(self) -> Dict[str, Any]:
        """转换为响应体"""
        body = {
            "code": self.code,
            "result": self.result,
            "message": self.message,
            "data": self.detail,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


# ==================== 集群 ====================

class TransientClusterError(RolloutException):
    """集群API暂时不可用，可重试"""
    code = 503
    result = "unavailable"
    message = "集群API暂时不可用"


class ClusterNotFoundError(RolloutException):
    """集群资源不存在"""
    code = 404
    result = "not-found"
    message = "集群资源不存在"

    def __init__(self, kind: str = "资源", name: Any = None, **kwargs):
        message = f"{kind} ({name}) 不存在" if name else f"{kind}不存在"
        super().__init__(message=message, **kwargs)


# ==================== 策略与配置 ====================

class PolicyViolation(RolloutException):
    """候选版违反发布策略（如镜像无法拉取）"""
    code = 422
    result = "policy-rejected"
    message = "候选版本违反发布策略"


class ConfigurationError(RolloutException):
    """发布配置错误（步骤计划非法、候选镜像不可用等）"""
    code = 422
    result = "policy-rejected"
    message = "发布配置校验失败"


# ==================== 发布记录 ====================

class ConflictError(RolloutException):
    """工作负载已有进行中的发布"""
    code = 409
    result = "conflict"
    message = "该工作负载已有进行中的发布"


class RolloutNotFoundError(RolloutException):
    """发布记录不存在"""
    code = 404
    result = "not-found"
    message = "发布记录不存在"

    def __init__(self, rollout_id: Any = None, **kwargs):
        message = f"发布 (ID: {rollout_id}) 不存在" if rollout_id else self.message
        super().__init__(message=message, **kwargs)


class InvalidTransitionError(RolloutException):
    """非法的阶段转换"""
    code = 409
    result = "conflict"
    message = "非法的阶段转换"


class TerminalRolloutError(RolloutException):
    """发布已处于终态，禁止修改"""
    code = 409
    result = "conflict"
    message = "发布已结束，不可再修改"


# ==================== 依赖服务 ====================

class StoreUnavailableError(RolloutException):
    """状态存储不可用"""
    code = 503
    result = "unavailable"
    message = "发布状态存储不可用"


class MetricsUnavailableError(RolloutException):
    """指标源不可用"""
    code = 503
    result = "unavailable"
    message = "指标源不可用"
