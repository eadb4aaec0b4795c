"""Prompt assembly from stored conversation turns."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Sequence

HISTORY_WINDOW = 10

ROLE_LABELS: Dict[str, str] = {
    "user": "User",
    "assistant": "Assistant",
}

# Keys checked, in order, for the generated text of a non-streaming reply.
RESPONSE_TEXT_KEYS: Sequence[str] = ("response", "content", "text")


def _label(role: str) -> str:
    return ROLE_LABELS.get(role, str(role).capitalize())


def compose_prompt(
    history: Iterable[Mapping[str, Any]],
    message: str,
    *,
    window: int = HISTORY_WINDOW,
    exclude_current: bool = False,
) -> str:
    """Render prior turns plus the new user message as one completion prompt.

    Parameters
    ----------
    history : iterable of mappings
        Prior messages, oldest first, each with ``role`` and ``content``.
    message : str
        The new user message.
    window : int
        Maximum number of prior messages kept (the most recent ones).
    exclude_current : bool
        Set when the last history entry *is* ``message`` (already persisted by
        the caller); that entry is dropped so it is not rendered twice.

    Examples
    --------
    >>> compose_prompt([{"role": "user", "content": "Hi"},
    ...                 {"role": "assistant", "content": "Hello"}], "How are you?")
    'User: Hi\\n\\nAssistant: Hello\\n\\nUser: How are you?\\n\\nAssistant:'
    """
    turns: List[Mapping[str, Any]] = list(history)
    if exclude_current and turns:
        turns = turns[:-1]
    if not turns:
        return message

    if window > 0:
        turns = turns[-window:]
    else:
        turns = []

    parts: List[str] = []
    for turn in turns:
        content = turn.get("content") or ""
        parts.append(f"{_label(turn.get('role', ''))}: {content}\n\n")
    parts.append(f"User: {message}\n\nAssistant:")
    return "".join(parts)


def extract_text(response: Mapping[str, Any]) -> str:
    """Return the generated text of a decoded backend reply.

    The first string found under :data:`RESPONSE_TEXT_KEYS` wins; a reply
    with none of them is kept whole as its JSON encoding.
    """
    for key in RESPONSE_TEXT_KEYS:
        value = response.get(key)
        if isinstance(value, str):
            return value
    return json.dumps(response, ensure_ascii=False)
