"""系统提示词。

会话的基础 system prompt 来自配置；请求携带的 intent（qa/write/
scaffold/brainstorm）会在其后追加一段场景说明。未知 intent 只用基础提示词。
"""

from typing import Optional


INTENT_HINTS = {
    "qa": "Answer the question directly. If the notes do not contain the answer, say so.",
    "write": "Continue or rewrite the user's text in the same voice and language. Output only the text.",
    "scaffold": "Produce a Markdown outline with headings and short bullet points that the user can fill in.",
    "brainstorm": "Offer several distinct ideas as a short list, one line each, without long explanations.",
}


def build_system_prompt(base: Optional[str], intent: str = "") -> str:
    """根据基础提示词与 intent 组装最终的 system prompt。"""

    parts = []
    if base and base.strip():
        parts.append(base.strip())
    hint = INTENT_HINTS.get((intent or "").strip().lower())
    if hint:
        parts.append(hint)
    return "\n\n".join(parts)
