import logging
import time
import threading
import uuid

from langchain_community.chat_message_histories.in_memory import ChatMessageHistory
from langchain_core.messages import HumanMessage, AIMessage

from storyflow.app_config import HISTORY_CONFIG

logger = logging.getLogger("storyflow")


class HistoryCache:
    """
    In-memory, per-thread conversation history with:
    - sliding TTL (expires ttl_seconds after last touch)
    - approximate token cap (chars/4 heuristic)
    - thread-safe operations (gateway calls run in worker threads)

    A "thread" is one running conversation: a genre or world building chat,
    or an interactive story. Callers hold on to the thread id and send it back
    to continue the conversation.
    """

    def __init__(self, ttl_seconds: int, max_tokens: int):
        self.ttl_seconds = ttl_seconds
        self.max_tokens = max_tokens
        self._lock = threading.Lock()
        # thread_id -> {"history": ChatMessageHistory, "expires_at": float}
        self._items: dict[str, dict[str, object]] = {}

    def new_thread_id(self) -> str:
        # every new thread adds an entry, so expired ones are dropped here
        removed = self.sweep_expired()
        if removed:
            logger.debug(f"[HISTORY] Swept {removed} expired threads")
        return f"thread_{uuid.uuid4().hex}"

    def _approx_tokens(self, text: str) -> int:
        return max(1, len(text) // 4)

    def _touch_unlocked(self, thread_id: str) -> None:
        now = time.time()
        item = self._items.get(thread_id)
        if item is not None:
            item["expires_at"] = now + self.ttl_seconds

    def _get_or_create_unlocked(self, thread_id: str) -> ChatMessageHistory:
        now = time.time()
        item = self._items.get(thread_id)

        if item is not None:
            expires_at = float(item["expires_at"])
            if expires_at > now:
                item["expires_at"] = now + self.ttl_seconds
                return item["history"]  # type: ignore[return-value]
            # expired -> replace
            del self._items[thread_id]

        history = ChatMessageHistory()
        self._items[thread_id] = {"history": history, "expires_at": now + self.ttl_seconds}
        return history

    def has(self, thread_id: str) -> bool:
        with self._lock:
            item = self._items.get(str(thread_id))
            return item is not None and float(item["expires_at"]) > time.time()

    def seed(self, thread_id: str, messages: list[dict]) -> None:
        """
        Rebuild a thread from client-held messages ({"role", "content"} dicts).
        Used when the client continues a conversation this process no longer
        remembers (restart, TTL expiry).
        """
        tid = str(thread_id)
        with self._lock:
            history = self._get_or_create_unlocked(tid)
            history.clear()
            for m in messages or []:
                content = str((m or {}).get("content") or "")
                if not content:
                    continue
                if (m.get("role") or "user") == "assistant":
                    history.add_message(AIMessage(content=content))
                else:
                    history.add_message(HumanMessage(content=content))
            self._prune_to_token_cap_unlocked(history)

    def snapshot(self, thread_id: str) -> list:
        """
        Returns a COPY of the current message list for LLM input.
        Also prunes to cap (under lock), and touches TTL.
        """
        tid = str(thread_id)
        with self._lock:
            history = self._get_or_create_unlocked(tid)
            self._prune_to_token_cap_unlocked(history)
            self._touch_unlocked(tid)
            return list(history.messages)

    def append_turn(self, thread_id: str, user_text: str, assistant_text: str) -> None:
        """
        Append user+assistant messages as a single turn and prune to cap.
        """
        tid = str(thread_id)
        with self._lock:
            history = self._get_or_create_unlocked(tid)
            history.add_message(HumanMessage(content=user_text))
            history.add_message(AIMessage(content=assistant_text))
            self._prune_to_token_cap_unlocked(history)
            self._touch_unlocked(tid)

    def _prune_to_token_cap_unlocked(self, history: ChatMessageHistory) -> None:
        msgs = list(history.messages)

        tokens = []
        total = 0
        for m in msgs:
            content = getattr(m, "content", "") or ""
            t = self._approx_tokens(str(content))
            tokens.append(t)
            total += t

        if total <= self.max_tokens:
            return

        # drop from front until under cap
        i = 0
        while i < len(msgs) and total > self.max_tokens:
            total -= tokens[i]
            i += 1

        history.messages = msgs[i:]

    def sweep_expired(self) -> int:
        """
        Delete expired histories. Returns how many entries were removed.
        """
        now = time.time()
        removed = 0
        with self._lock:
            expired = [k for k, v in self._items.items() if float(v["expires_at"]) <= now]
            for k in expired:
                del self._items[k]
                removed += 1
        return removed


def build_history_cache() -> HistoryCache:
    return HistoryCache(
        ttl_seconds=int(HISTORY_CONFIG.get("ttl_seconds", 24 * 3600)),
        max_tokens=int(HISTORY_CONFIG.get("max_tokens", 8000)),
    )
