"""请求编排：取消登记表与 preview/full 增量拆分。"""

from agent_gateway.orchestration.cancellation import CancelHandle, CancelRegistry
from agent_gateway.orchestration.orchestrator import DeltaSplitter, Orchestrator

__all__ = ["CancelHandle", "CancelRegistry", "DeltaSplitter", "Orchestrator"]
