import logging
import time
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Protocol, Sequence, TypedDict

import httpx

from fitter.core.config import PipelineConfig
from fitter.core.errors import ProviderRequestError, ProviderUnavailable

logger = logging.getLogger("fitter.ai")

Role = Literal["system", "user", "assistant"]


class ChatMessage(TypedDict):
    role: Role
    content: str


@dataclass(frozen=True)
class ContextWindow:
    system_instruction: Optional[str]
    turns: tuple[ChatMessage, ...]

    @property
    def char_count(self) -> int:
        return sum(len(turn["content"]) for turn in self.turns)


def select_context_window(
    messages: Sequence[ChatMessage], max_turns: int, max_chars: int
) -> ContextWindow:
    """Split off the system message and keep the most recent turns that fit the budget.

    Turns are taken newest first until either budget would be exceeded; the kept turns
    are returned oldest first. A newest turn that alone exceeds the character budget
    yields an empty window.
    """
    system_instruction: Optional[str] = None
    history: list[ChatMessage] = []
    for message in messages:
        if message["role"] == "system":
            if system_instruction is None:
                system_instruction = message["content"]
            continue
        history.append(message)

    selected: list[ChatMessage] = []
    used = 0
    for message in reversed(history):
        if len(selected) >= max_turns:
            break
        size = len(message["content"])
        if used + size > max_chars:
            break
        used += size
        selected.append(message)
    selected.reverse()
    return ContextWindow(system_instruction=system_instruction, turns=tuple(selected))


class ProviderTransport(Protocol):
    name: str

    def complete(self, model: str, window: ContextWindow, timeout: httpx.Timeout) -> str:
        ...


def _http_timeout(config: PipelineConfig, remaining: Optional[float] = None) -> httpx.Timeout:
    read = config.ai_timeout_seconds
    if remaining is not None:
        read = max(0.1, min(read, remaining))
    return httpx.Timeout(
        connect=min(config.ai_connect_timeout_seconds, read),
        read=read,
        write=read,
        pool=read,
    )


def _raise_for_status(provider: str, model: str, response: httpx.Response) -> None:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else None
        detail = ""
        if exc.response is not None:
            detail = (exc.response.text or "").strip()[:220]
        raise ProviderRequestError(
            provider=provider,
            model=model,
            status_code=status,
            message=f"{provider} request failed (status={status}): {detail or 'no response body'}",
        ) from exc


class GeminiTransport:
    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: str,
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.client = client or httpx.Client()

    def _payload(self, window: ContextWindow) -> dict:
        payload = {
            "contents": [
                {
                    "role": "model" if turn["role"] == "assistant" else "user",
                    "parts": [{"text": turn["content"]}],
                }
                for turn in window.turns
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
                for category in (
                    "HARM_CATEGORY_HATE_SPEECH",
                    "HARM_CATEGORY_HARASSMENT",
                    "HARM_CATEGORY_DANGEROUS_CONTENT",
                )
            ],
        }
        if window.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": window.system_instruction}]}
        return payload

    def complete(self, model: str, window: ContextWindow, timeout: httpx.Timeout) -> str:
        try:
            response = self.client.post(
                f"{self.base_url}/models/{model}:generateContent",
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=self._payload(window),
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                provider=self.name, model=model, message=f"Gemini transport error: {str(exc)[:220]}"
            ) from exc
        _raise_for_status(self.name, model, response)
        data = response.json()
        texts: list[str] = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                text = part.get("text")
                if isinstance(text, str):
                    texts.append(text)
            if texts:
                break
        return "".join(texts).strip()


class OpenAITransport:
    name = "openai"
    url = "https://api.openai.com/v1/chat/completions"

    def __init__(
        self,
        api_key: str,
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.client = client or httpx.Client()

    def complete(self, model: str, window: ContextWindow, timeout: httpx.Timeout) -> str:
        messages: list[dict[str, str]] = []
        if window.system_instruction:
            messages.append({"role": "system", "content": window.system_instruction})
        messages.extend({"role": turn["role"], "content": turn["content"]} for turn in window.turns)
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_completion_tokens": self.max_output_tokens,
        }
        try:
            response = self.client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json=payload,
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                provider=self.name, model=model, message=f"OpenAI transport error: {str(exc)[:220]}"
            ) from exc
        _raise_for_status(self.name, model, response)
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        return str((choices[0].get("message") or {}).get("content") or "").strip()


def build_transport(config: PipelineConfig, client: Optional[httpx.Client] = None) -> ProviderTransport:
    if config.ai_provider == "gemini":
        return GeminiTransport(
            api_key=config.ai_api_key,
            temperature=config.ai_temperature,
            max_output_tokens=config.ai_max_output_tokens,
            client=client,
        )
    if config.ai_provider == "openai":
        return OpenAITransport(
            api_key=config.ai_api_key,
            temperature=config.ai_temperature,
            max_output_tokens=config.ai_max_output_tokens,
            client=client,
        )
    raise ValueError("Unsupported AI provider")


def model_attempt_order(config: PipelineConfig) -> list[str]:
    preferred = config.ai_model
    supported = config.ai_supported_models
    if supported and preferred not in supported:
        preferred = supported[0]
    return [preferred, *config.ai_fallback_models]


class AIGateway:
    """Turns a role-tagged message list into one reply, compensating for a flaky provider."""

    def __init__(
        self,
        config: PipelineConfig,
        transport: Optional[ProviderTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.transport = transport or build_transport(config)
        self.sleep = sleep
        self.monotonic = monotonic

    def generate(self, messages: Sequence[ChatMessage]) -> str:
        window = select_context_window(
            messages,
            max_turns=self.config.ai_max_context_turns,
            max_chars=self.config.ai_max_context_chars,
        )
        if not window.turns:
            raise ProviderUnavailable("No conversation turn fits the context window")
        models = model_attempt_order(self.config)
        started = self.monotonic()
        budget = self.config.ai_user_budget_seconds
        last_error: Optional[BaseException] = None
        attempts = 0

        for idx, model in enumerate(models):
            remaining = budget - (self.monotonic() - started)
            if remaining <= 0:
                last_error = last_error or TimeoutError("AI call budget exhausted")
                logger.warning("ai_budget_exhausted attempts=%s budget_s=%s", attempts, budget)
                break
            attempts += 1
            try:
                reply = self.transport.complete(model, window, _http_timeout(self.config, remaining))
                if reply and reply.strip():
                    if idx:
                        logger.info("ai_fallback_succeeded model=%s attempt=%s", model, attempts)
                    return reply.strip()
                last_error = ProviderRequestError(
                    provider=self.transport.name, model=model, message="Empty response"
                )
                logger.warning("ai_empty_response provider=%s model=%s", self.transport.name, model)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "ai_request_failed provider=%s model=%s detail=%s",
                    self.transport.name,
                    model,
                    str(exc)[:220],
                )
            if idx < len(models) - 1:
                self.sleep(self.config.ai_retry_backoff_seconds * (idx + 1))

        raise ProviderUnavailable(
            f"AI provider unavailable after {attempts} attempt(s): {last_error}",
            last_error=last_error,
            attempts=attempts,
        )
