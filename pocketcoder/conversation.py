"""Conversation builder: persisted history -> adapter message list."""

from dataclasses import replace

from pocketcoder.llm.base import ChatMessage
from pocketcoder.logging import get_logger
from pocketcoder.models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ROLE_USER, Message

log = get_logger(__name__)


def build_conversation(messages: list[Message]) -> list[ChatMessage]:
    """Map stored messages to the normalized form adapters consume.

    Tool-call linkage is preserved: a tool message is kept only when an
    earlier assistant message in the same history requested its
    ``tool_call_id``. Orphan tool messages are dropped with a warning, and
    assistant tool calls that never got a result are stripped so strict
    backends do not reject the request.
    """
    converted: list[ChatMessage] = []
    pending_ids: set[str] = set()
    pending_index: int | None = None

    def _close_pending_chain() -> None:
        nonlocal pending_ids, pending_index
        if pending_index is not None and pending_ids:
            assistant = converted[pending_index]
            kept = [tc for tc in assistant.tool_calls if tc.id not in pending_ids]
            log.warning(
                "Stripping unanswered tool calls from history",
                tool_call_ids=sorted(pending_ids),
            )
            converted[pending_index] = replace(assistant, tool_calls=kept)
        pending_ids = set()
        pending_index = None

    for message in messages:
        role = message.role

        if role == ROLE_TOOL:
            call_id = (message.tool_call_id or "").strip()
            if call_id and call_id in pending_ids:
                converted.append(
                    ChatMessage(role=ROLE_TOOL, content=message.content, tool_call_id=call_id)
                )
                pending_ids.discard(call_id)
                if not pending_ids:
                    pending_index = None
                continue
            log.warning("Dropping orphan tool message", message_id=message.id, tool_call_id=call_id)
            continue

        _close_pending_chain()

        if role == ROLE_ASSISTANT:
            converted.append(
                ChatMessage(
                    role=ROLE_ASSISTANT,
                    content=message.content,
                    tool_calls=list(message.tool_calls),
                )
            )
            pending_ids = {tc.id for tc in message.tool_calls if tc.id}
            pending_index = len(converted) - 1 if pending_ids else None
        elif role in (ROLE_USER, ROLE_SYSTEM):
            converted.append(ChatMessage(role=role, content=message.content))
        else:
            log.warning("Skipping message with unknown role", message_id=message.id, role=role)

    _close_pending_chain()
    return converted
