"""上下文窗口预算裁剪。

在把对话提交给 Provider 之前，把消息列表裁剪到 token 预算以内：

1. 预算 = max_prompt_tokens - reserve_for_response，必须为正。
2. 第一条 system 消息总是保留；它单独就超预算时被硬截断并单独返回，
   预算连省略号加消息开销都放不下时抛 BudgetError。
3. 其余消息从最新往最旧贪婪选取最长后缀；第一条放不下的消息如果是
   user/assistant 且剩余空间足够，会被截断后放进来，更旧的全部丢弃。
4. 输出顺序：system（如有）在前，其余保持原有时间顺序。
"""

from dataclasses import replace
from typing import List, Optional, Sequence

from agent_gateway.context.tokenizer import ELLIPSIS, Tokenizer
from agent_gateway.domain.exceptions import BudgetError, ValidationError
from agent_gateway.domain.models import ChatMessage


# 截断时额外留出的余量，吸收省略号和计数误差
SAFETY_MARGIN = 8
# 剩余空间大于该值才尝试截断最新一条放不下的消息
MIN_TRUNCATE_ALLOWANCE = 16
TRUNCATABLE_ROLES = ("user", "assistant")


class ContextBudgeter:
    def __init__(self, tokenizer: Tokenizer):
        self._tokenizer = tokenizer

    def clip(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_prompt_tokens: int,
        reserve_for_response: int,
    ) -> List[ChatMessage]:
        if max_prompt_tokens <= 0:
            raise ValidationError(
                code="CONFIG_ERROR",
                message=f"max_prompt_tokens must be positive, got {max_prompt_tokens}",
            )
        reserve = max(reserve_for_response, 0)
        budget = max_prompt_tokens - reserve
        if budget <= 0:
            raise BudgetError(
                code="BUDGET_ERROR",
                message=(
                    f"no prompt budget left: max_prompt_tokens={max_prompt_tokens}, "
                    f"reserve={reserve}"
                ),
            )

        system: Optional[ChatMessage] = None
        rest: List[ChatMessage] = []
        for msg in messages:
            if msg.role == "system" and system is None:
                system = msg
                continue
            rest.append(msg)

        tok = self._tokenizer
        total = 0
        if system is not None:
            cost = tok.count_message(model, system)
            if cost > budget:
                clipped = replace(
                    system,
                    content=tok.truncate(model, system.content, budget - SAFETY_MARGIN) or ELLIPSIS,
                )
                if tok.count_message(model, clipped) > budget:
                    raise BudgetError(
                        code="BUDGET_ERROR",
                        message=f"prompt budget {budget} cannot hold the system message",
                    )
                return [clipped]
            total = cost

        # 从最新往最旧选取，最后再翻转回时间顺序
        newest_first: List[ChatMessage] = []
        for msg in reversed(rest):
            cost = tok.count_message(model, msg)
            if total + cost <= budget:
                newest_first.append(msg)
                total += cost
                continue
            if msg.role in TRUNCATABLE_ROLES:
                allow = budget - total
                if allow > MIN_TRUNCATE_ALLOWANCE:
                    content = tok.truncate(model, msg.content, allow - SAFETY_MARGIN)
                    if content.strip():
                        newest_first.append(replace(msg, content=content))
            break

        newest_first.reverse()
        return ([system] if system is not None else []) + newest_first
