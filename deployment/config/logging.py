# 渐进式发布控制器 - 日志配置
"""
结构化日志配置

控制器推进某个发布期间，rollout_id 与工作负载通过 contextvars 绑定到
该协程内的所有日志上，并发推进的多个发布互不串扰。
"""

import logging
import sys
from contextlib import contextmanager
from typing import Optional

import structlog

# 由 setup_logging 安装的处理器，重复调用时先移除
_INSTALLED_HANDLERS = []

QUIET_LOGGERS = ("uvicorn.access", "httpx", "kubernetes_asyncio", "aiohttp")


def add_app_info(app_name: str, version: str):
    """每条日志附带服务名与版本"""
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", app_name)
        event_dict.setdefault("version", version)
        return event_dict
    return processor


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    app_name: Optional[str] = None,
    version: Optional[str] = None,
):
    """
    配置 structlog 与标准库 logging

    Args:
        level: 日志级别
        json_format: 输出JSON（生产环境），否则为彩色控制台格式
        log_file: 额外写入的日志文件
        app_name: 服务名，非空时附加到每条日志
        version: 服务版本
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if app_name:
        processors.append(add_app_info(app_name, version or ""))

    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    for handler in _INSTALLED_HANDLERS:
        root_logger.removeHandler(handler)
        handler.close()
    _INSTALLED_HANDLERS.clear()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(handler)
        _INSTALLED_HANDLERS.append(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


@contextmanager
def bind_rollout_context(rollout_id: str, workload: str):
    """在当前上下文内为日志绑定发布标识"""
    with structlog.contextvars.bound_contextvars(rollout_id=rollout_id, workload=workload):
        yield


def get_logger(name: str = None) -> structlog.BoundLogger:
    """获取logger实例"""
    return structlog.get_logger(name)
