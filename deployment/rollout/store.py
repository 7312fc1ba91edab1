# 渐进式发布控制器 - 发布状态存储
"""
发布记录的持久化

目录布局：
    rollouts/<rollout_id>.json       每个发布一条记录
    active/<namespace>__<workload>.json  每个工作负载当前进行中的发布指针
    history.jsonl                    终态记录，仅追加
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from deployment.exceptions import (
    ConflictError,
    RolloutNotFoundError,
    StoreUnavailableError,
    TerminalRolloutError,
)

from .models import Revision, Rollout, RolloutPhase

logger = structlog.get_logger()


class RolloutStore(ABC):
    """发布状态存储接口"""

    @abstractmethod
    def save(self, rollout: Rollout) -> None:
        """持久化完整的发布记录（在任何对外可见的动作之前调用）"""

    @abstractmethod
    def get(self, rollout_id: str) -> Rollout:
        """按ID读取发布记录"""

    @abstractmethod
    def load(self, namespace: str, workload: str) -> Optional[Rollout]:
        """读取工作负载当前进行中的发布"""

    @abstractmethod
    def list_active(self) -> List[Rollout]:
        """列出所有进行中的发布"""

    @abstractmethod
    def list_all(self) -> List[Rollout]:
        """列出所有发布记录"""

    @abstractmethod
    def history(self, namespace: str, workload: str) -> List[Rollout]:
        """工作负载的终态发布历史（按时间顺序）"""

    @abstractmethod
    def ping(self) -> None:
        """检查存储可用，不可用时抛出 StoreUnavailableError"""

    def last_known_good(self, namespace: str, workload: str) -> Optional[Revision]:
        """最近一次成功发布的版本"""
        for rollout in reversed(self.history(namespace, workload)):
            if rollout.phase == RolloutPhase.SUCCEEDED:
                return rollout.candidate
        return None


def write_json_atomic(path: Path, payload: Dict[str, Any]) -> None:
    """临时文件 + fsync + os.replace 原子写入"""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
    dirfd = os.open(str(path.parent), os.O_DIRECTORY)
    try:
        os.fsync(dirfd)
    finally:
        os.close(dirfd)


class FileRolloutStore(RolloutStore):
    """基于本地文件的持久化存储"""

    def __init__(self, root: str):
        self.root = Path(root)
        self.records_dir = self.root / "rollouts"
        self.active_dir = self.root / "active"
        self.history_file = self.root / "history.jsonl"

    def _record_path(self, rollout_id: str) -> Path:
        return self.records_dir / f"{rollout_id}.json"

    def _pointer_path(self, namespace: str, workload: str) -> Path:
        return self.active_dir / f"{namespace}__{workload}.json"

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailableError(f"读取 {path} 失败: {e}") from e
        except ValueError as e:
            raise StoreUnavailableError(f"{path} 内容损坏: {e}") from e

    def _read_pointer(self, namespace: str, workload: str) -> Optional[str]:
        data = self._read_json(self._pointer_path(namespace, workload))
        return data["rollout_id"] if data else None

    def _history_ids(self) -> set:
        return {r.rollout_id for r in self._read_history()}

    @staticmethod
    def _parse_line(raw: bytes) -> Optional[Rollout]:
        try:
            return Rollout.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, KeyError, TypeError):
            return None

    def _read_history_bytes(self) -> bytes:
        try:
            with open(self.history_file, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return b""
        except OSError as e:
            raise StoreUnavailableError(f"读取发布历史失败: {e}") from e

    def _read_history(self) -> List[Rollout]:
        """
        读取终态历史

        追加时崩溃只会留下不完整的末行，读取时忽略它；其余行损坏视为存储不可用。
        """
        lines = [line for line in self._read_history_bytes().split(b"\n") if line.strip()]
        rollouts = []
        for number, line in enumerate(lines, 1):
            rollout = self._parse_line(line)
            if rollout is None:
                if number == len(lines):
                    logger.warning("发布历史末行不完整，已忽略", line=number)
                    break
                raise StoreUnavailableError(f"发布历史第{number}行损坏")
            rollouts.append(rollout)
        return rollouts

    def _repair_history_tail(self) -> None:
        """截掉崩溃时写了一半的末行"""
        data = self._read_history_bytes()
        if data.endswith(b"\n"):
            start = data.rfind(b"\n", 0, len(data) - 1) + 1
            if not data[start:].strip() or self._parse_line(data[start:]) is not None:
                return
            keep = start
        else:
            keep = data.rfind(b"\n") + 1
        if keep == len(data):
            return
        with open(self.history_file, "r+b") as f:
            f.truncate(keep)
            f.flush()
            os.fsync(f.fileno())
        logger.warning("已截断发布历史中不完整的末行", offset=keep, dropped=len(data) - keep)

    def _append_history(self, rollout: Rollout) -> None:
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        self._repair_history_tail()
        line = json.dumps(rollout.to_dict(), ensure_ascii=False, sort_keys=True)
        with open(self.history_file, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _finalize(self, rollout: Rollout) -> None:
        """终态记录归档并释放工作负载指针"""
        if rollout.rollout_id not in self._history_ids():
            self._append_history(rollout)
        pointer = self._pointer_path(rollout.namespace, rollout.workload)
        if self._read_pointer(rollout.namespace, rollout.workload) == rollout.rollout_id:
            pointer.unlink(missing_ok=True)

    def save(self, rollout: Rollout) -> None:
        try:
            existing = self._read_json(self._record_path(rollout.rollout_id))
            if existing and RolloutPhase(existing["phase"]).is_terminal:
                raise TerminalRolloutError(
                    f"发布 {rollout.rollout_id} 已处于终态 {existing['phase']}"
                )

            active_id = self._read_pointer(rollout.namespace, rollout.workload)
            if active_id and active_id != rollout.rollout_id:
                raise ConflictError(
                    f"工作负载 {rollout.key} 已有进行中的发布 {active_id}"
                )

            write_json_atomic(self._record_path(rollout.rollout_id), rollout.to_dict())
            if rollout.is_terminal:
                self._finalize(rollout)
            elif active_id is None:
                write_json_atomic(
                    self._pointer_path(rollout.namespace, rollout.workload),
                    {"rollout_id": rollout.rollout_id},
                )
        except OSError as e:
            raise StoreUnavailableError(f"保存发布记录失败: {e}") from e

        logger.debug(
            "保存发布记录",
            rollout_id=rollout.rollout_id,
            phase=rollout.phase.value,
            candidate_weight=rollout.candidate_weight,
        )

    def get(self, rollout_id: str) -> Rollout:
        data = self._read_json(self._record_path(rollout_id))
        if data is None:
            raise RolloutNotFoundError(rollout_id)
        return Rollout.from_dict(data)

    def load(self, namespace: str, workload: str) -> Optional[Rollout]:
        rollout_id = self._read_pointer(namespace, workload)
        if rollout_id is None:
            return None
        try:
            rollout = self.get(rollout_id)
        except RolloutNotFoundError:
            logger.warning("发布指针悬空，已清理", workload=workload, rollout_id=rollout_id)
            self._pointer_path(namespace, workload).unlink(missing_ok=True)
            return None
        if rollout.is_terminal:
            # 终态写入后、指针释放前崩溃
            try:
                self._finalize(rollout)
            except OSError as e:
                raise StoreUnavailableError(f"归档发布记录失败: {e}") from e
            return None
        return rollout

    def list_active(self) -> List[Rollout]:
        if not self.active_dir.exists():
            return []
        rollouts = []
        try:
            pointers = sorted(self.active_dir.glob("*.json"))
        except OSError as e:
            raise StoreUnavailableError(f"列出进行中的发布失败: {e}") from e
        for pointer in pointers:
            namespace, _, workload = pointer.stem.partition("__")
            rollout = self.load(namespace, workload)
            if rollout is not None:
                rollouts.append(rollout)
        return rollouts

    def list_all(self) -> List[Rollout]:
        if not self.records_dir.exists():
            return []
        try:
            paths = list(self.records_dir.glob("*.json"))
        except OSError as e:
            raise StoreUnavailableError(f"列出发布记录失败: {e}") from e
        rollouts = []
        for path in paths:
            data = self._read_json(path)
            # glob 之后记录可能已被删除
            if data is not None:
                rollouts.append(Rollout.from_dict(data))
        return sorted(rollouts, key=lambda r: r.created_at)

    def history(self, namespace: str, workload: str) -> List[Rollout]:
        return [
            r for r in self._read_history()
            if r.namespace == namespace and r.workload == workload
        ]

    def ping(self) -> None:
        try:
            write_json_atomic(self.root / ".ping", {"ok": True})
        except OSError as e:
            raise StoreUnavailableError(f"状态存储不可写: {e}") from e
