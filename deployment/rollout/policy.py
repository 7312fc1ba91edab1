# 渐进式发布控制器 - 健康判定
"""
候选版本健康判定

每个采样周期得到一对样本（候选版/稳定版），先判定单个样本是否达标，
再在当前检查点的滑动窗口内综合判定：
- 最近连续 N 个有效样本全部不达标 → 违规（避免历史良好数据掩盖短暂但真实的退化）
- 有效样本不足 → 无结论
- 有效样本中严格超过半数达标 → 通过，否则违规
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Deque, List, Optional

from .models import HealthPolicy, HealthSample, utcnow


class Verdict(str, Enum):
    """判定结果"""
    PASS = "pass"
    BREACH = "breach"
    INCONCLUSIVE = "inconclusive"


@dataclass
class SampleResult:
    """单个采样周期的判定"""
    candidate: Optional[HealthSample]
    baseline: Optional[HealthSample]
    conclusive: bool
    passed: bool
    reasons: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Evaluation:
    """窗口综合判定"""
    verdict: Verdict
    passed: int = 0
    failed: int = 0
    inconclusive: int = 0
    reason: str = ""


def judge_sample(
    candidate: Optional[HealthSample],
    stable: Optional[HealthSample],
    policy: HealthPolicy,
    fallback_baseline: Optional[HealthSample] = None,
    ready: bool = True,
) -> SampleResult:
    """
    判定单个样本

    稳定版当前流量不足时（蓝绿切换后、滚动更新完成后）使用初始化时
    采集的基线；两者都没有时错误率按绝对值比较，延迟不参与判定。
    """
    if not ready:
        return SampleResult(candidate, None, conclusive=False, passed=False,
                            reasons=["候选实例未就绪"])
    if candidate is None:
        return SampleResult(None, None, conclusive=False, passed=False,
                            reasons=["候选版指标缺失"])
    if candidate.total < policy.min_requests:
        return SampleResult(candidate, None, conclusive=False, passed=False,
                            reasons=[f"请求数不足: {candidate.total:.0f} < {policy.min_requests}"])

    baseline = None
    for sample in (stable, fallback_baseline):
        if sample is not None and sample.total >= policy.min_requests:
            baseline = sample
            break

    reasons = []
    baseline_error_rate = baseline.error_rate if baseline else 0.0
    error_delta = candidate.error_rate - baseline_error_rate
    if error_delta > policy.error_rate_delta:
        reasons.append(
            f"错误率差值 {error_delta:.4f} 超过阈值 {policy.error_rate_delta}"
        )
    if baseline is not None:
        latency_delta = candidate.latency_p99 - baseline.latency_p99
        if latency_delta > policy.latency_delta_ms:
            reasons.append(
                f"P99延迟差值 {latency_delta:.1f}ms 超过阈值 {policy.latency_delta_ms}ms"
            )

    return SampleResult(candidate, baseline, conclusive=True, passed=not reasons, reasons=reasons)


class HealthWindow:
    """单个检查点的有界滑动窗口"""

    def __init__(self, max_samples: int = 120, retention: Optional[timedelta] = None):
        self._results: Deque[SampleResult] = deque(maxlen=max_samples)
        self.retention = retention

    def __len__(self) -> int:
        return len(self._results)

    @property
    def results(self) -> List[SampleResult]:
        return list(self._results)

    def add(self, result: SampleResult):
        self._results.append(result)
        self.prune(result.timestamp)

    def prune(self, now: Optional[datetime] = None):
        """丢弃超出保留时间的样本"""
        if self.retention is None:
            return
        cutoff = (now or utcnow()) - self.retention
        while self._results and self._results[0].timestamp < cutoff:
            self._results.popleft()

    def clear(self):
        self._results.clear()

    def evaluate(self, policy: HealthPolicy) -> Evaluation:
        """综合判定当前窗口"""
        conclusive = [r for r in self._results if r.conclusive]
        passed = sum(1 for r in conclusive if r.passed)
        failed = len(conclusive) - passed
        inconclusive = len(self._results) - len(conclusive)

        limit = policy.consecutive_breach_limit
        if limit > 0 and len(conclusive) >= limit:
            recent = conclusive[-limit:]
            if all(not r.passed for r in recent):
                return Evaluation(
                    Verdict.BREACH, passed, failed, inconclusive,
                    reason=f"最近连续{limit}个样本不达标: {'; '.join(recent[-1].reasons)}",
                )

        if len(conclusive) < max(policy.min_samples, 1):
            return Evaluation(
                Verdict.INCONCLUSIVE, passed, failed, inconclusive,
                reason=f"有效样本不足: {len(conclusive)} < {policy.min_samples}",
            )

        if passed * 2 > len(conclusive):
            return Evaluation(Verdict.PASS, passed, failed, inconclusive)

        last_failed = next((r for r in reversed(conclusive) if not r.passed), None)
        detail = "; ".join(last_failed.reasons) if last_failed else ""
        return Evaluation(
            Verdict.BREACH, passed, failed, inconclusive,
            reason=f"达标样本未过半 ({passed}/{len(conclusive)}): {detail}",
        )
