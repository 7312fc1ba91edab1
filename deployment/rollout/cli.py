#!/usr/bin/env python3
# 渐进式发布控制器 - 命令行工具
"""
通过HTTP接口操作发布

退出码：0 成功，3 不存在，4 冲突，5 策略拒绝，6 不可用，1 其他错误
"""

import json
import os
import sys
from typing import Dict, List, Optional

import httpx

from .service import ResultCode

DEFAULT_SERVER = os.environ.get("ROLLOUT_SERVER", "http://localhost:8080")


def _parse_labels(items: Optional[List[str]]) -> Dict[str, str]:
    labels = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"标签格式应为 key=value: {item}")
        labels[key] = value
    return labels


def _parse_steps(value: Optional[str]) -> Optional[List[int]]:
    if not value:
        return None
    return [int(v) for v in value.split(",") if v.strip()]


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(prog="rollout", description="渐进式发布控制器")
    parser.add_argument("--server", default=DEFAULT_SERVER, help="控制器地址")
    parser.add_argument("--api-prefix", default="/api/v1", help="接口前缀")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="发起发布")
    start.add_argument("workload", help="工作负载名称")
    start.add_argument("--strategy", choices=["rolling", "blue-green", "canary"], required=True)
    start.add_argument("--image", required=True, help="候选版镜像")
    start.add_argument("--revision", required=True, help="候选版标识")
    start.add_argument("--deployment", help="候选版Deployment（默认与工作负载同名）")
    start.add_argument("--label", action="append", help="候选版Pod标签 key=value，可重复")
    start.add_argument("--container", help="容器名")
    start.add_argument("--config-hash", default="", help="配置哈希")
    start.add_argument("--steps", help="权重检查点，如 10,25,50,100")
    start.add_argument("--namespace", "-n", help="命名空间")
    start.add_argument("--service", help="Service名称")
    start.add_argument("--route", help="加权路由规则名称")
    start.add_argument("--bake-seconds", type=int, help="每个检查点的观察期（秒）")
    start.add_argument("--max-surge", type=int)
    start.add_argument("--max-unavailable", type=int)

    for name, text in (("status", "查询发布状态"), ("abort", "中止发布"), ("promote", "人工推进")):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("rollout_id")

    listing = sub.add_parser("list", help="列出发布")
    listing.add_argument("--active", action="store_true", help="只列出进行中的发布")

    history = sub.add_parser("history", help="工作负载发布历史")
    history.add_argument("workload")
    history.add_argument("--namespace", "-n", default="default")

    sub.add_parser("serve", help="启动控制器服务")
    return parser


def _request(client: httpx.Client, args) -> httpx.Response:
    prefix = args.api_prefix
    if args.command == "start":
        body = {
            "workload": args.workload,
            "strategy": args.strategy,
            "candidate": {
                "revision_id": args.revision,
                "deployment": args.deployment or args.workload,
                "image": args.image,
                "config_hash": args.config_hash,
                "labels": _parse_labels(args.label),
                "container": args.container,
            },
            "step_plan": _parse_steps(args.steps),
            "namespace": args.namespace,
            "service": args.service,
            "route": args.route,
            "bake_seconds": args.bake_seconds,
            "max_surge": args.max_surge,
            "max_unavailable": args.max_unavailable,
        }
        return client.post(f"{prefix}/rollouts", json=body)
    if args.command == "status":
        return client.get(f"{prefix}/rollouts/{args.rollout_id}")
    if args.command in ("abort", "promote"):
        return client.post(f"{prefix}/rollouts/{args.rollout_id}/{args.command}")
    if args.command == "list":
        return client.get(f"{prefix}/rollouts", params={"active": str(args.active).lower()})
    return client.get(f"{prefix}/workloads/{args.namespace}/{args.workload}/history")


def exit_code_for(response: httpx.Response) -> int:
    """根据响应中的结果码得到退出码"""
    try:
        result = response.json().get("result")
        return ResultCode(result).exit_code
    except (ValueError, AttributeError):
        pass
    if response.status_code == 422:
        return ResultCode.POLICY_REJECTED.exit_code
    return ResultCode.SUCCESS.exit_code if response.is_success else ResultCode.ERROR.exit_code


def main(argv: Optional[List[str]] = None, client: Optional[httpx.Client] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        from .api import main as serve
        serve()
        return 0

    own_client = client is None
    client = client or httpx.Client(base_url=args.server, timeout=30)
    try:
        response = _request(client, args)
    except ValueError as e:
        print(f"参数错误: {e}", file=sys.stderr)
        return ResultCode.POLICY_REJECTED.exit_code
    except httpx.HTTPError as e:
        print(f"无法连接控制器: {e}", file=sys.stderr)
        return ResultCode.UNAVAILABLE.exit_code
    finally:
        if own_client:
            client.close()

    try:
        print(json.dumps(response.json(), ensure_ascii=False, indent=2))
    except ValueError:
        print(response.text)
    return exit_code_for(response)


def run():
    """命令行入口"""
    sys.exit(main())


if __name__ == "__main__":
    run()
