"""Model Gateway: sole point of contact with the chat-completions service.

Speaks the OpenAI-compatible wire format:
  POST {base_url}/chat/completions  {model, messages, temperature, max_tokens}
  → {choices: [{message: {content}}], usage?}

Failures are never retried.  A missing credential, a rejected credential, a
transport error or a non-success status all end in the same place: a
deterministic answer picked by keyword from the legal catalogue's offline
rubric.  After a wire failure the circuit stays open for a cooldown, during
which calls are answered locally without touching the network.
"""

import json
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable

import httpx

from leaseguard.config import (
    TOGETHER_API_KEY, LLM_BASE_URL, LLM_MODEL, VISION_MODEL, LLM_TIMEOUT,
    LLM_DEFAULT_TEMPERATURE, LLM_DEFAULT_MAX_TOKENS, FALLBACK_COOLDOWN_SECONDS,
)
from leaseguard.pipeline.errors import AuthError, LeaseGuardError, NetworkError
from leaseguard.pipeline.prompts import ComposedPrompt, LegalCatalogue

logger = logging.getLogger(__name__)

# Type for progress callback: async fn(stage, message, details_dict)
LLMProgressCallback = Callable[[str, str, dict], Awaitable[None]]


async def _noop_cb(stage: str, message: str, details: dict) -> None:
    pass


STREAM_SENTINEL = "[DONE]"
NO_RESPONSE_TEXT = "No response generated."
_MAX_RECORDED_FAILURES = 50


@dataclass(frozen=True)
class GatewaySettings:
    api_key: str = ""
    base_url: str = LLM_BASE_URL
    model: str = LLM_MODEL
    vision_model: str = VISION_MODEL
    timeout: float = LLM_TIMEOUT
    temperature: float = LLM_DEFAULT_TEMPERATURE
    max_tokens: int = LLM_DEFAULT_MAX_TOKENS
    fallback_cooldown: float = FALLBACK_COOLDOWN_SECONDS

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(api_key=TOGETHER_API_KEY)

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


@dataclass
class GatewayResult:
    text: str
    used_fallback: bool = False
    error_type: str | None = None
    model: str = ""
    usage: dict = field(default_factory=dict)
    elapsed: float = 0.0


# ═══════════════════════════════════════════════════════════════════
# Offline fallback
# ═══════════════════════════════════════════════════════════════════

class OfflineFallback:
    """Keyword rubric: first rule whose keyword appears in the prompt wins."""

    def __init__(self, rules: list[tuple[tuple[str, ...], str]], default: str, empty: str):
        self.rules = rules
        self.default = default
        self.empty = empty

    @classmethod
    def from_catalogue(cls, catalogue: LegalCatalogue) -> "OfflineFallback":
        section = catalogue.fallback_answers
        rules = [(tuple(k.lower() for k in r["keywords"]), r["answer"]) for r in section["rules"]]
        return cls(rules, section["default"], section["empty"])

    def answer(self, prompt_text: str) -> str:
        if not prompt_text or not prompt_text.strip():
            return self.empty
        lowered = prompt_text.lower()
        for keywords, answer in self.rules:
            if any(k in lowered for k in keywords):
                return answer
        return self.default


class FallbackPolicy:
    """Circuit-breaker-like policy: substitute a local answer, never retry.

    A wire failure opens the circuit for ``cooldown`` seconds; while open,
    every call is answered locally.  A successful call closes it.
    """

    def __init__(
        self,
        answers: OfflineFallback,
        cooldown: float = FALLBACK_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.answers = answers
        self.cooldown = cooldown
        self._clock = clock
        self._opened_at: float | None = None
        self.failures: list[dict] = []

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        return (self._clock() - self._opened_at) < self.cooldown

    def record_failure(self, error: LeaseGuardError, task_label: str = "") -> None:
        self.failures.append({
            "at": datetime.now(timezone.utc).isoformat(),
            "task": task_label,
            "error_type": error.error_type,
            "message": error.message,
        })
        del self.failures[:-_MAX_RECORDED_FAILURES]
        self._opened_at = self._clock()

    def record_success(self) -> None:
        self._opened_at = None

    def answer(self, prompt_text: str) -> str:
        return self.answers.answer(prompt_text)


def parse_stream_line(line: str) -> tuple[bool, str]:
    """Decode one server-sent-events line into (finished, text delta).

    Lines without a ``data:`` payload and chunks that are not valid JSON are
    skipped (empty delta); ``[DONE]`` marks the end of the stream.
    """
    if "data:" not in line:
        return False, ""
    payload = line.split("data:", 1)[1].strip()
    if not payload:
        return False, ""
    if payload == STREAM_SENTINEL:
        return True, ""
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        return False, ""
    if not isinstance(chunk, dict):
        return False, ""
    if isinstance(chunk.get("text"), str):
        return False, chunk["text"]
    choices = chunk.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str):
            return False, content
    return False, ""


# ═══════════════════════════════════════════════════════════════════
# Gateway
# ═══════════════════════════════════════════════════════════════════

class ModelGateway:
    """Chat-completions client with a deterministic offline fallback.

    Usage:
        gateway = ModelGateway(GatewaySettings.from_env())
        text = await gateway.generate("Is my deposit capped?")
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        fallback: FallbackPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings or GatewaySettings.from_env()
        self.fallback = fallback or FallbackPolicy(
            OfflineFallback.from_catalogue(LegalCatalogue.load()),
            cooldown=self.settings.fallback_cooldown,
        )
        self._transport = transport
        self.logger = logger or logging.getLogger(__name__)

    # ── Helpers ──

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        # Per-call client; each concurrent task gets its own connection pool
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or self.settings.timeout),
            transport=self._transport,
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def build_messages(prompt: str, system_prompt: str = "",
                       image_refs: list[str] | None = None,
                       image_labels: list[str] | None = None) -> list[dict]:
        """Build the message list; each image may be preceded by a text label."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if image_refs:
            labels = list(image_labels or [])
            content: str | list[dict] = [{"type": "text", "text": prompt}]
            for idx, ref in enumerate(image_refs):
                if idx < len(labels) and labels[idx]:
                    content.append({"type": "text", "text": labels[idx]})
                content.append({"type": "image_url", "image_url": {"url": ref}})
        else:
            content = prompt
        messages.append({"role": "user", "content": content})
        return messages

    @staticmethod
    def _last_message_text(messages: list[dict]) -> str:
        if not messages:
            return ""
        content = messages[-1].get("content", "")
        if isinstance(content, str):
            return content
        return " ".join(b.get("text", "") for b in content if b.get("type") == "text")

    def _preflight(self) -> None:
        """Raise before any wire call when the gateway must answer locally."""
        if not self.settings.has_credential:
            raise AuthError("Model service credential is not configured")
        if self.fallback.is_open:
            raise NetworkError("Circuit open after a recent model-service failure")

    def _raise_for_status(self, status_code: int) -> None:
        if status_code in (401, 403):
            raise AuthError(f"Model service rejected the credential (HTTP {status_code})")
        if not 200 <= status_code < 300:
            raise NetworkError(f"Model service returned HTTP {status_code}", status_code=status_code)

    def _fallback_result(self, messages: list[dict], error: LeaseGuardError, label: str,
                         model: str, record: bool) -> GatewayResult:
        if record:
            self.fallback.record_failure(error, label)
            self.logger.warning(f"[{label}] {error.message}; answering from offline fallback (not retried)")
        else:
            self.logger.info(f"[{label}] {error.message}; answering from offline fallback")
        return GatewayResult(
            text=self.fallback.answer(self._last_message_text(messages)),
            used_fallback=True,
            error_type=error.error_type,
            model=model,
        )

    # ── Generation ──

    async def generate_result(
        self,
        prompt: str,
        system_prompt: str = "",
        image_refs: list[str] | None = None,
        image_labels: list[str] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        task_label: str = "",
        on_progress: LLMProgressCallback | None = None,
    ) -> GatewayResult:
        """Send one chat completion; never raises for service or auth failures."""
        cb = on_progress or _noop_cb
        label = task_label or "LLM Call"
        messages = self.build_messages(prompt, system_prompt, image_refs, image_labels)
        model = self.settings.vision_model if image_refs else self.settings.model
        body = {
            "model": model,
            "messages": messages,
            "temperature": self.settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.settings.max_tokens,
        }

        try:
            self._preflight()
        except (AuthError, NetworkError) as e:
            await cb("llm_fallback", f"{label}: offline answer", {"type": "llm_fallback", "task": label,
                                                                   "reason": e.error_type})
            return self._fallback_result(messages, e, label, model, record=False)

        await cb("llm_start", label, {
            "type": "llm_start",
            "task": label,
            "model": model,
            "images": len(image_refs or []),
            "prompt_chars": len(prompt) + len(system_prompt),
        })

        t0 = time.time()
        try:
            async with self._client() as client:
                response = await client.post(self.settings.completions_url, json=body, headers=self._headers())
            self._raise_for_status(response.status_code)
            try:
                data = response.json()
            except ValueError as e:
                raise NetworkError("Model service returned a non-JSON body") from e
        except httpx.HTTPError as e:
            error = NetworkError(f"{type(e).__name__}: {e}")
            await cb("llm_fallback", f"{label}: offline answer", {"type": "llm_fallback", "task": label,
                                                                   "reason": error.error_type})
            return self._fallback_result(messages, error, label, model, record=True)
        except (AuthError, NetworkError) as e:
            await cb("llm_fallback", f"{label}: offline answer", {"type": "llm_fallback", "task": label,
                                                                   "reason": e.error_type})
            return self._fallback_result(messages, e, label, model, record=True)

        elapsed = time.time() - t0
        self.fallback.record_success()

        content = None
        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content")
        usage = data.get("usage") or {} if isinstance(data, dict) else {}

        self.logger.info(
            f"[{label}] {model} responded in {elapsed:.1f}s "
            f"({usage.get('total_tokens', '?')} tokens, {len(content or ''):,} chars)"
        )
        await cb("llm_done", label, {
            "type": "llm_done",
            "task": label,
            "elapsed": round(elapsed, 2),
            "tokens": usage.get("total_tokens"),
        })
        return GatewayResult(
            text=content or NO_RESPONSE_TEXT,
            model=model,
            usage=usage,
            elapsed=elapsed,
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        image_refs: list[str] | None = None,
        image_labels: list[str] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        task_label: str = "",
        on_progress: LLMProgressCallback | None = None,
    ) -> str:
        """Return the raw model text (or the offline fallback answer)."""
        result = await self.generate_result(
            prompt, system_prompt, image_refs, image_labels, temperature, max_tokens, task_label, on_progress,
        )
        return result.text

    async def complete(self, prompt: ComposedPrompt,
                       on_progress: LLMProgressCallback | None = None) -> GatewayResult:
        """Send a prompt built by the PromptComposer."""
        return await self.generate_result(
            prompt.user,
            system_prompt=prompt.system,
            image_refs=list(prompt.image_refs) or None,
            image_labels=list(prompt.image_labels) or None,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            task_label=prompt.stage,
            on_progress=on_progress,
        )

    # ── Streaming ──

    async def stream(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        task_label: str = "",
    ) -> AsyncIterator[str]:
        """Yield text deltas as they arrive.

        The stream ends at the ``[DONE]`` sentinel.  If the service cannot be
        reached before anything was produced, the offline answer is yielded
        as a single chunk instead.
        """
        label = task_label or "LLM Stream"
        messages = self.build_messages(prompt, system_prompt)
        try:
            self._preflight()
        except (AuthError, NetworkError) as e:
            yield self._fallback_result(messages, e, label, self.settings.model, record=False).text
            return

        body = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": self.settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.settings.max_tokens,
            "stream": True,
        }
        emitted = False
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self.settings.completions_url, json=body, headers=self._headers(),
                ) as resp:
                    self._raise_for_status(resp.status_code)
                    async for raw_line in resp.aiter_lines():
                        done, delta = parse_stream_line(raw_line)
                        if done:
                            break
                        if delta:
                            emitted = True
                            yield delta
        except httpx.HTTPError as e:
            result = self._fallback_result(messages, NetworkError(f"{type(e).__name__}: {e}"),
                                           label, self.settings.model, record=True)
            if not emitted:
                yield result.text
            return
        except (AuthError, NetworkError) as e:
            result = self._fallback_result(messages, e, label, self.settings.model, record=True)
            if not emitted:
                yield result.text
            return
        self.fallback.record_success()

    async def generate_streamed(self, prompt: str, system_prompt: str = "",
                                task_label: str = "") -> str:
        """Concatenate a streamed completion."""
        parts = [delta async for delta in self.stream(prompt, system_prompt, task_label=task_label)]
        return "".join(parts) or NO_RESPONSE_TEXT

    # ── Status ──

    async def check_status(self) -> dict:
        """Query the service's model listing; never raises."""
        if not self.settings.has_credential:
            return {"status": "unconfigured", "model": self.settings.model, "fallback": "offline"}
        try:
            async with self._client(timeout=10) as client:
                resp = await client.get(f"{self.settings.base_url.rstrip('/')}/models",
                                        headers=self._headers())
                resp.raise_for_status()
            return {
                "status": "online",
                "model": self.settings.model,
                "vision_model": self.settings.vision_model,
                "circuit_open": self.fallback.is_open,
            }
        except httpx.HTTPError as e:
            return {"status": "offline", "error": str(e), "circuit_open": self.fallback.is_open}
