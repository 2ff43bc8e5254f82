import asyncio
import logging
import random
import threading
import time
import traceback
from typing import Callable, TypeVar, Any, Dict, List, Optional

from openai import OpenAI
from langchain_google_vertexai import VertexAI, ChatVertexAI
from langchain_core.messages import AIMessage, BaseMessage, SystemMessage

from storyflow.app_config import parse_model_name, is_openai_model

T = TypeVar("T")

logger = logging.getLogger("storyflow")


class MaxRetryErrorsException(Exception):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_rate_limited_error(e: Exception) -> bool:
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
            or "rate_limit" in msg.lower()
        )
    )


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.
    """
    last_exception: Exception | None = None

    def _respect_global_backoff() -> None:
        while True:
            with _global_backoff_lock:
                now = time.monotonic()
                wait = _global_wait_until - now
            if wait <= 0:
                return
            time.sleep(min(wait, 1.0))

    def _register_429_and_get_delay() -> float:
        global _global_wait_until, _global_backoff_seconds

        with _global_backoff_lock:
            now = time.monotonic()
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
            _global_wait_until = max(_global_wait_until, now + delay)
            return delay

    def _reset_backoff_on_success() -> None:
        global _global_backoff_seconds
        _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_rate_limited_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429, backing off ~{delay:.1f}s."
            elif _is_timeout_error(e):
                msg = f"Attempt {attempt+1} timed out."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class BaseLlmClient:
    """
    One model behind either provider: OpenAI chat completions or a LangChain
    Vertex wrapper, picked from the model name. OpenAI names may carry
    `_json` / `_t0.7` suffixes (see app_config.parse_model_name).

    Subclasses set `vertex_class` and turn their input into OpenAI messages.
    Every call accrues token usage into `last_usage`.
    """

    vertex_class: Any = None
    log_tag = "LLM"

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self.timeout = timeout
        self.last_usage: Optional[Dict[str, int]] = None
        self._openai_params: Dict[str, Any] = {}
        self._vertex = None
        self._client = None

        if self.provider == "vertex":
            self._vertex = self.vertex_class(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
            return

        self.model_name, self._openai_params = parse_model_name(model_name)
        # retries belong to call_with_retries_sync
        client_kwargs: Dict[str, Any] = {"max_retries": 0}
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        self._client = OpenAI(**client_kwargs)

    def _to_openai_messages(self, payload: Any) -> List[Dict[str, str]]:
        raise NotImplementedError

    def _invoke_once(self, payload: Any, json_mode: bool = False, max_tokens: int | None = None) -> str:
        """
        Single provider call without retries/backoff.
        """
        if self.provider == "vertex":
            return self._vertex_text(self._vertex.invoke(payload))

        params = dict(self._openai_params)
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        if max_tokens:
            params["max_tokens"] = max_tokens
        resp = self._client.chat.completions.create(
            model=self.model_name,
            messages=self._to_openai_messages(payload),
            **params,
        )
        self._merge_openai_usage(getattr(resp, "usage", None))
        return (resp.choices[0].message.content or "").strip()

    def invoke(self, payload: Any, *, json_mode: bool = False, max_tokens: int | None = None, retries: int = 3) -> str:
        return call_with_retries_sync(
            lambda: self._invoke_once(payload, json_mode=json_mode, max_tokens=max_tokens),
            retries=retries,
            log=lambda msg: logger.warning(f"[{self.log_tag}-RETRY] {msg}"),
        )

    # -----------------------
    # Token usage
    # -----------------------

    def _merge_openai_usage(self, usage: Any) -> None:
        if usage is None:
            return
        self._add_usage({
            "prompt_token_count": getattr(usage, "prompt_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "completion_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
        })

    def _merge_vertex_usage(self, usage_metadata: Any) -> None:
        if not usage_metadata:
            return

        def read(key: str) -> int:
            if isinstance(usage_metadata, dict):
                return int(usage_metadata.get(key, 0) or 0)
            return int(getattr(usage_metadata, key, 0) or 0)

        self._add_usage({key: read(key) for key in ("prompt_token_count", "candidates_token_count", "total_token_count")})

    def _add_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return
        for key, value in inc.items():
            self.last_usage[key] = (self.last_usage.get(key) or 0) + (value or 0)

    def get_accrued_usage(self) -> Dict[str, int]:
        return dict(self.last_usage or {})

    def _vertex_text(self, resp: Any) -> str:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            meta = getattr(resp, "response_metadata", None)
            usage_md = meta.get("usage_metadata") if isinstance(meta, dict) else getattr(meta, "usage_metadata", None)
        self._merge_vertex_usage(usage_md)

        if isinstance(resp, str):
            return resp
        # chat models return a message with .content
        return getattr(resp, "content", str(resp))


class LlmClient(BaseLlmClient):
    """
    Completion-style use: `text = llm.invoke("some prompt")`.
    On OpenAI the prompt is sent as a single user message.
    """

    vertex_class = VertexAI
    log_tag = "LLM"

    def _to_openai_messages(self, prompt: str) -> List[Dict[str, str]]:
        return [{"role": "user", "content": prompt}]


class ChatLlmClient(BaseLlmClient):
    """
    Chat-style use: `text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), AIMessage(...)])`.
    """

    vertex_class = ChatVertexAI
    log_tag = "CHAT-LLM"

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "system"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out
