"""
SuggestionGenerator: ask the LLM whether a detected question is for the user and,
if so, for a short suggested response.

The model is asked for JSON:
{"isQuestion": bool, "suggestedResponse": str | null, "relevantInfo": [str] | null}
Unparseable output is treated as isQuestion=false (no callout), never as an error.
HTTP and credential errors propagate; CalloutScheduler catches them.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from copilot.config import get_settings
from copilot.llm import WorkersAIClient, extract_json_object

logger = logging.getLogger(__name__)

CALLOUT_SYSTEM_PROMPT = """You are an AI assistant helping someone in a meeting. When they receive a question that requires their response, you provide brief, helpful context.

Your job is to:
1. Determine if this question is likely directed at the user (YOU) and needs their response
2. If yes, provide a brief, helpful response based on available context
3. Keep responses concise (2-3 sentences max) - this is for quick glance during a meeting

Return isQuestion: FALSE if:
- The question mentions someone else by name
- It's rhetorical or a statement phrased as a question
- Someone else in the conversation is clearly being addressed
- It's small talk or doesn't need a substantive answer ("How are you?", "Right?")

Return isQuestion: TRUE if:
- The question is directed at "you" or the group generally
- Based on conversation context, you (the mic user) are expected to respond
- It's a follow-up to something you just said

Respond in JSON only, no markdown:
{"isQuestion": boolean, "suggestedResponse": "brief helpful context or answer" | null, "relevantInfo": ["key point 1", "key point 2"] | null}"""


@dataclass
class Suggestion:
    response: str
    relevant_info: list[str] = field(default_factory=list)


def build_callout_messages(question: str, context: str) -> list[dict[str, str]]:
    user_content = (
        f'Question received: "{question}"\n\n'
        f"Available context:\n{context.strip() if context and context.strip() else 'No additional context available.'}\n\n"
        "Is this a question I should respond to, and if so, what's a helpful response?"
    )
    return [
        {"role": "system", "content": CALLOUT_SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def parse_callout_response(content: str) -> Suggestion | None:
    """Suggestion when the model says it is a question with a response; else None."""
    try:
        data = extract_json_object(content or "")
    except (json.JSONDecodeError, ValueError) as e:
        logger.debug("Callout response was not valid JSON: %s", e)
        return None
    if not data.get("isQuestion"):
        return None
    response = data.get("suggestedResponse")
    if not isinstance(response, str) or not response.strip():
        return None
    info = data.get("relevantInfo") or []
    if not isinstance(info, list):
        info = [str(info)]
    return Suggestion(response=response.strip(), relevant_info=[str(i) for i in info if str(i).strip()])


class SuggestionGenerator:
    def __init__(self, client: WorkersAIClient | None = None, max_tokens: int | None = None) -> None:
        self._client = client or WorkersAIClient()
        self._max_tokens = max_tokens or get_settings().CALLOUT_MAX_TOKENS

    async def generate(self, question: str, context: str) -> Suggestion | None:
        content = await self._client.run_chat(
            build_callout_messages(question, context),
            max_tokens=self._max_tokens,
            temperature=0.2,
        )
        return parse_callout_response(content)
