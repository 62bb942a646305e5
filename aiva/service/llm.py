from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from openai import AzureOpenAI

from aiva.config import Settings
from aiva.logging import get_logger

logger = get_logger(__name__)

CHAT_MAX_TOKENS = 1000
CHAT_TEMPERATURE = 0.7


@dataclass
class ChatCompletionResult:
    content: str
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens", 0))


class ModelBackend(Protocol):
    """Interface for pluggable chat-completion backends."""

    mode: str

    def complete(
        self, messages: List[dict], *, max_tokens: int, temperature: float
    ) -> ChatCompletionResult: ...


class AzureOpenAIBackend:
    """Chat completions against an Azure OpenAI deployment."""

    mode = "azure_openai"

    def __init__(
        self,
        *,
        endpoint: str,
        api_key: str,
        api_version: str,
        deployment: str,
        timeout: float = 60.0,
    ) -> None:
        self.deployment = deployment
        self.client = AzureOpenAI(
            azure_endpoint=endpoint.rstrip("/"),
            api_key=api_key,
            api_version=api_version,
            timeout=timeout,
            max_retries=0,
        )

    def complete(
        self, messages: List[dict], *, max_tokens: int, temperature: float
    ) -> ChatCompletionResult:
        completion = self.client.chat.completions.create(
            model=self.deployment,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("openai_completion_no_choices", deployment=self.deployment)
            content = ""
        else:
            content = first_choice.message.content or ""
        usage = {
            "prompt_tokens": getattr(completion.usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(completion.usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(completion.usage, "total_tokens", 0) or 0,
        }
        return ChatCompletionResult(content=content, usage=usage)


class EchoBackend:
    """Deterministic backend for TEST_MODE: echoes the last message."""

    mode = "echo"

    def complete(
        self, messages: List[dict], *, max_tokens: int, temperature: float
    ) -> ChatCompletionResult:
        last = messages[-1]["content"] if messages else ""
        prompt_tokens = sum(len(str(m.get("content", "")).split()) for m in messages)
        completion_tokens = max(1, min(max_tokens, len(last.split())))
        return ChatCompletionResult(
            content=f"[echo] {last}",
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )


def build_backend(settings: Settings) -> ModelBackend:
    """Azure OpenAI when configured; echo in TEST_MODE; otherwise refuse to start."""

    if settings.openai_configured:
        return AzureOpenAIBackend(
            endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,
            api_version=settings.azure_openai_api_version,
            deployment=settings.azure_openai_deployment,
            timeout=settings.azure_openai_timeout_seconds,
        )
    if settings.test_mode:
        logger.warning("openai_echo_backend_enabled", reason="TEST_MODE")
        return EchoBackend()
    raise RuntimeError("Azure OpenAI configuration missing in environment variables")


class LLMService:
    """Chat-completion helper shared by the chat route and file analysis."""

    def __init__(
        self,
        backend: ModelBackend,
        *,
        system_prompt: str,
    ) -> None:
        self.backend = backend
        self.system_prompt = system_prompt

    async def get_chat_completion(
        self,
        messages: List[dict],
        *,
        max_tokens: int = CHAT_MAX_TOKENS,
        temperature: float = CHAT_TEMPERATURE,
    ) -> ChatCompletionResult:
        # The OpenAI SDK client is synchronous; keep it off the event loop
        return await asyncio.to_thread(
            self.backend.complete,
            messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

    async def complete(
        self, history: List[dict], user_content: str
    ) -> ChatCompletionResult:
        """Run one chat turn: system prompt, prior turns, then the new user message."""
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": user_content})
        return await self.get_chat_completion(messages)


def friendly_error_message(error: Optional[BaseException | str]) -> str:
    """Map an LLM failure to a message fit for the chat window."""

    text = str(error or "").lower()
    if "timeout" in text or "timed out" in text:
        return "The AI service is taking too long to respond. Please try again later."
    if "overloaded" in text or "rate limit" in text:
        return "The AI service is currently overloaded. Please wait a moment and try again."
    if "authentication" in text or "unauthorized" in text:
        return "Authentication failed. Please refresh the page and try again."
    if "model" in text or "configuration" in text:
        return "There is an issue with the AI model configuration. Please contact support."
    if "workspace" in text:
        return "Workspace configuration error. Please refresh the page and try again."
    return "Sorry, there was an error processing your message. Please try again."
