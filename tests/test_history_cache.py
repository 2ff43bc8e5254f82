from langchain_core.messages import AIMessage, HumanMessage

from storyflow.history_cache import HistoryCache


def test_append_and_snapshot():
    cache = HistoryCache(ttl_seconds=60, max_tokens=1000)
    tid = cache.new_thread_id()
    cache.append_turn(tid, "hello", "hi there")

    messages = cache.snapshot(tid)
    assert isinstance(messages[0], HumanMessage)
    assert isinstance(messages[1], AIMessage)
    assert cache.has(tid)
    assert not cache.has("thread_unknown")


def test_seed_replaces_history():
    cache = HistoryCache(ttl_seconds=60, max_tokens=1000)
    cache.append_turn("t1", "old", "old reply")
    cache.seed("t1", [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "second"},
        {"role": "user", "content": ""},
    ])
    assert [m.content for m in cache.snapshot("t1")] == ["first", "second"]


def test_token_cap_drops_oldest():
    cache = HistoryCache(ttl_seconds=60, max_tokens=10)
    cache.append_turn("t1", "a" * 20, "b" * 20)
    cache.append_turn("t1", "c" * 12, "d" * 12)
    assert [m.content[0] for m in cache.snapshot("t1")] == ["c", "d"]


def test_expired_threads_are_forgotten():
    cache = HistoryCache(ttl_seconds=0, max_tokens=1000)
    cache.append_turn("t1", "hello", "hi")
    assert not cache.has("t1")
    assert cache.sweep_expired() == 1
