"""
GhostTerm - Messages and in-memory conversation history.

Created by orpheus497

Chat history lives only in this module's MessageHistory, which is held by
the Session. Entries are kept ordered by (timestamp, sequence number,
sender) rather than arrival order, deduplicated by (sender, sequence
number) and bounded: once the bound is exceeded the oldest entries are
dropped. Nothing here is ever written to disk.
"""

import bisect
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple

from .constants import MAX_RETAINED_MESSAGES

logger = logging.getLogger(__name__)

OrderingKey = Tuple[int, int, str]


class MessageKind(IntEnum):
    """Message kinds carried on the gossip channel."""

    CHAT = 1
    PRESENCE = 2


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """A chat or presence message.

    Attributes:
        sender: Hex peer identifier of the original author
        seq: Sequence number, strictly increasing per sender and kind
        timestamp: Wall-clock send time in milliseconds since the epoch
        body: Message text (empty for presence beacons)
        kind: CHAT or PRESENCE
        sender_name: Author's display name at send time
    """

    sender: str
    seq: int
    timestamp: int
    body: str
    kind: MessageKind = MessageKind.CHAT
    sender_name: Optional[str] = None

    @property
    def ordering_key(self) -> OrderingKey:
        return (self.timestamp, self.seq, self.sender)

    @property
    def dedup_key(self) -> Tuple[str, int]:
        return (self.sender, self.seq)

    def is_chat(self) -> bool:
        return self.kind == MessageKind.CHAT


class MessageHistory:
    """Ordered, deduplicated, bounded chat history."""

    def __init__(self, max_messages: int = MAX_RETAINED_MESSAGES):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self._keys: List[OrderingKey] = []
        self._messages: List[Message] = []
        self._seen: Dict[Tuple[str, int], OrderingKey] = {}

    def add(self, message: Message) -> bool:
        """
        Insert a chat message in ordering-key position.

        Returns:
            True if the message became visible, False for duplicates and
            for messages older than everything retained in a full history
        """
        if not message.is_chat():
            raise ValueError("only chat messages belong in history")

        if message.dedup_key in self._seen:
            logger.debug(f"Duplicate message {message.sender[:8]}#{message.seq} ignored")
            return False

        key = message.ordering_key
        if len(self._messages) >= self.max_messages and key < self._keys[0]:
            logger.debug(f"Message {message.sender[:8]}#{message.seq} older than retained history")
            return False

        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._seen[message.dedup_key] = key

        while len(self._messages) > self.max_messages:
            self._keys.pop(0)
            evicted = self._messages.pop(0)
            del self._seen[evicted.dedup_key]

        return True

    def contains(self, sender: str, seq: int) -> bool:
        return (sender, seq) in self._seen

    def clear(self) -> None:
        self._keys.clear()
        self._messages.clear()
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]
