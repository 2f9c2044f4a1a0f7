"""Rolling per-chat conversation history for in-process bots."""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from botfleet.config import settings

ConversationKey = Tuple[str, int]  # (bot_id, chat_id)


class ConversationStore:
    """
    Bounded history keyed by (bot_id, chat_id).

    One turn is a user message plus the assistant reply, so a deque holds
    at most ``2 * max_turns`` messages and drops the oldest on overflow.
    """

    def __init__(self, max_turns: Optional[int] = None):
        self.max_turns = max_turns or settings.conversation_history_turns
        self._history: Dict[ConversationKey, Deque[Dict[str, str]]] = {}
        self._lock = threading.Lock()

    def _buffer(self, key: ConversationKey) -> Deque[Dict[str, str]]:
        buf = self._history.get(key)
        if buf is None:
            buf = deque(maxlen=self.max_turns * 2)
            self._history[key] = buf
        return buf

    def history(self, bot_id: str, chat_id: int) -> List[Dict[str, str]]:
        with self._lock:
            buf = self._history.get((bot_id, chat_id))
            return list(buf) if buf else []

    def append_turn(self, bot_id: str, chat_id: int, user_text: str, reply: str) -> None:
        with self._lock:
            buf = self._buffer((bot_id, chat_id))
            buf.append({"role": "user", "content": user_text})
            buf.append({"role": "assistant", "content": reply})

    def build_messages(
        self,
        bot_id: str,
        chat_id: int,
        system_prompt: Optional[str],
        user_text: str,
    ) -> List[Dict[str, str]]:
        """System prompt, stored history, then the new user message."""
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(self.history(bot_id, chat_id))
        messages.append({"role": "user", "content": user_text})
        return messages

    def clear_bot(self, bot_id: str) -> int:
        """Forget every chat of one bot. Returns the number of chats dropped."""
        with self._lock:
            keys = [k for k in self._history if k[0] == bot_id]
            for k in keys:
                del self._history[k]
            return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)
