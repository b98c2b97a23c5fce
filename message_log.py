# message_log.py
import json
import logging
from typing import Iterable, List, Sequence

from backends import ChatMessage, Message
from storage import KeyValueStorage

log = logging.getLogger(__name__)

MESSAGES_KEY = "messages"
PERSISTED_MESSAGES = 50
CONTEXT_MESSAGES = 10


def rolling_context(messages: Sequence[ChatMessage], limit: int = CONTEXT_MESSAGES) -> List[Message]:
    """The last `limit` messages, oldest first, as role/content dicts."""
    if limit <= 0:
        return []
    return [{"role": m.role, "content": m.content} for m in messages[-limit:]]


class MessageStore:
    """Persists the tail of the chat log; like ConfigStore it never raises."""

    def __init__(self, storage: KeyValueStorage, key: str = MESSAGES_KEY, keep: int = PERSISTED_MESSAGES):
        self.storage = storage
        self.key = key
        self.keep = keep

    def load(self) -> List[ChatMessage]:
        try:
            raw = self.storage.load(self.key)
            if raw is None:
                return []
            messages = [ChatMessage.from_dict(d) for d in json.loads(raw)]
        except (OSError, ValueError, TypeError, KeyError) as e:
            log.warning("Discarding unreadable chat history: %s", e)
            return []
        return messages[-self.keep:]

    def save(self, messages: Iterable[ChatMessage]) -> None:
        tail = list(messages)[-self.keep:]
        data = json.dumps([m.to_dict() for m in tail], ensure_ascii=False).encode("utf-8")
        try:
            self.storage.save(self.key, data)
        except (OSError, ValueError) as e:
            log.error("Could not save chat history: %s", e)
