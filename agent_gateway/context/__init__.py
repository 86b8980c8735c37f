"""上下文预算：token 计数（tokenizer）与对话裁剪（budget）。"""

from agent_gateway.context.budget import ContextBudgeter
from agent_gateway.context.tokenizer import Tokenizer

__all__ = ["ContextBudgeter", "Tokenizer"]
