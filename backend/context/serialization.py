"""
Conversation context serialization for AI analysis requests.

Responsibilities:
- Convert system prompt + trailing transcript context + the segment
  under analysis into chat-completion message format.

Non-responsibilities:
- No truncation logic
- No turn storage
- No logging
"""

from __future__ import annotations

from context.conversation import ConversationContext


def serialize_for_llm(
    *,
    system_prompt: str,
    context: ConversationContext | None,
    segment_text: str,
    segment_prefix: str = "Analyze this segment:\n",
) -> list[dict[str, str]]:
    """
    Serialize an analysis request into LLM message format.

    Output format:
    [
        {"role": "system", "content": "..."},
        {"role": "user", "content": "Me: ..."},
        ...
        {"role": "user", "content": "Analyze this segment:\\n<segment>"},
    ]

    Rules:
    - System prompt is always first
    - Trailing context comes next (already truncated); the newest turn is
      skipped when it is the segment itself
    - The segment under analysis is appended last, after segment_prefix
      (chat questions pass an empty prefix)
    """
    messages: list[dict[str, str]] = [{
        "role": "system",
        "content": system_prompt,
    }]

    if context is not None:
        messages.extend(context.serialize(omit_trailing=segment_text))

    messages.append({
        "role": "user",
        "content": f"{segment_prefix}{segment_text}",
    })

    return messages
