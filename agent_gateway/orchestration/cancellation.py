"""取消登记表。

请求 id -> CancelHandle 的映射，用一把互斥锁保护。锁只包住字典操作本身，
不会跨越任何 await。移除是幂等的：重复移除或移除不存在的 id 都是空操作。
"""

import asyncio
import threading
from typing import Dict, List, Optional

from agent_gateway.domain.exceptions import DuplicateRequestError


class CancelHandle:
    """停止某个请求所需的能力：持有执行任务并记录取消原因。"""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Future] = None

    def attach(self, task: asyncio.Future) -> None:
        self._task = task
        if self.reason is not None:
            task.cancel()

    def cancel(self, reason: str = "client") -> None:
        if self.reason is None:
            self.reason = reason
        if self._task is not None:
            self._task.cancel()


class CancelRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, CancelHandle] = {}

    def register(self, request_id: str, handle: CancelHandle) -> None:
        with self._lock:
            if request_id in self._entries:
                raise DuplicateRequestError(
                    code="DUPLICATE_REQUEST",
                    message=f"request {request_id!r} is already running",
                )
            self._entries[request_id] = handle

    def remove(self, request_id: str, handle: Optional[CancelHandle] = None) -> bool:
        """移除登记；给定 handle 时只有登记的正是它才移除。"""

        with self._lock:
            current = self._entries.get(request_id)
            if current is None or (handle is not None and current is not handle):
                return False
            del self._entries[request_id]
            return True

    def cancel(self, request_id: str, reason: str = "client") -> bool:
        with self._lock:
            handle = self._entries.pop(request_id, None)
            if handle is not None:
                handle.cancel(reason)
        return handle is not None

    def cancel_all(self, reason: str) -> int:
        with self._lock:
            handles = list(self._entries.values())
            self._entries.clear()
            for handle in handles:
                handle.cancel(reason)
        return len(handles)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
