import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from .models import Message

logger = logging.getLogger(__name__)

HistoryLoader = Callable[[str, int], Iterable[Message]]


class ConversationCache:
    """
    In-memory recent history per conversation, used to build model context.

    Every conversation id owns its own list. Entries are only ever replaced by a
    newly allocated list, and get() hands out copies, so no two ids can end up
    sharing (and clearing) the same history.
    """

    def __init__(self, loader: Optional[HistoryLoader] = None, max_messages: int = 20):
        # Mongo reads limit(0) as "no limit", so an empty window cannot be loaded consistently
        if max_messages < 1:
            raise ValueError(f"max_messages must be at least 1, got {max_messages}")
        self.loader = loader
        self.max_messages = max_messages
        self._entries: Dict[str, List[Message]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, conversation_id: str) -> List[Message]:
        """Cached history (oldest first), loaded from storage on first access"""
        entry = self._entries.get(conversation_id)
        if entry is None:
            loaded = list(self.loader(conversation_id, self.max_messages)) if self.loader else []
            entry = loaded[-self.max_messages:]
            self._entries[conversation_id] = entry
            logger.debug(f"Loaded {len(entry)} messages into cache for conversation {conversation_id}")
        return list(entry)

    def start_fresh(self, conversation_id: str, initial_system_message: Optional[str] = None):
        """Replace the entry with a brand-new list, seeded with an optional system message"""
        history: List[Message] = []
        if initial_system_message:
            history.append(Message(role="system", content=initial_system_message))
        self._entries[conversation_id] = history

    def append(self, conversation_id: str, *messages: Message):
        """Append messages and keep only the most recent max_messages"""
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = []
            self._entries[conversation_id] = entry

        entry.extend(messages)
        overflow = len(entry) - self.max_messages
        if overflow > 0:
            del entry[:overflow]

    def evict(self, conversation_id: str):
        self._entries.pop(conversation_id, None)
        with self._registry_lock:
            self._locks.pop(conversation_id, None)

    def clear(self):
        self._entries.clear()
        with self._registry_lock:
            self._locks.clear()

    def lock(self, conversation_id: str) -> threading.Lock:
        """Lock serializing exchanges on one conversation"""
        with self._registry_lock:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock
