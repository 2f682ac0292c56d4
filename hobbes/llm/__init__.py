"""Gemini provider - direct HTTP calls to the Generative Language API."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from hobbes.config import GEMINI_BASE_URL
from hobbes.exceptions import LLMAPIError, LLMError
from hobbes.logging import get_logger

log = get_logger(__name__)


SUMMARY_PROMPT_TEMPLATE = """
You are an AI assistant that refines a conversation summary.
You will be given a previous summary (which may be empty) and the most recent messages in a conversation.
Your primary task is to integrate the new information from the recent messages into the previous summary, updating and extending it.
Preserve existing information while incorporating new facts, entities, or user preferences.

A crucial part of your task is to analyze the **sentiment and mood** of the user in the "Recent Messages".

Format your response as a single, clean JSON object with three keys: "summary", "entities", and "sentiment".
- "summary": A concise, updated summary of the entire conversation so far.
- "entities": An object containing all key-value pairs of extracted information. If the user mentions their name, be sure to extract it and include it as `{{"user_name": "..."}}` in this object.
- "sentiment": A brief string describing the user's current sentiment or mood (e.g., "curious and collaborative", "frustrated but focused", "pleased with the progress", "neutral"). This should reflect the feeling of the recent messages.

Previous Summary:
---
{previous_summary}
---

Recent Messages:
---
{recent_messages}
"""


@dataclass
class Part:
    """One part of a content entry: text, a function call or a function response."""

    text: str | None = None
    function_call: dict[str, Any] | None = None
    function_response: dict[str, Any] | None = None

    @classmethod
    def call(cls, name: str, args: dict[str, Any]) -> "Part":
        return cls(function_call={"name": name, "args": args})

    @classmethod
    def response(cls, name: str, result: Any) -> "Part":
        return cls(function_response={"name": name, "response": {"result": result}})

    def to_dict(self) -> dict[str, Any]:
        if self.function_call is not None:
            return {"functionCall": self.function_call}
        if self.function_response is not None:
            return {"functionResponse": self.function_response}
        return {"text": self.text or ""}


@dataclass
class Content:
    """A role-tagged content entry ("user" or "model")."""

    role: str
    parts: list[Part] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [part.to_dict() for part in self.parts]}


@dataclass
class PromptPackage:
    """Provider-agnostic prompt: system instruction, contents and tool declarations."""

    system_instruction: str | None = None
    contents: list[Content] = field(default_factory=list)
    tools: list[dict[str, Any]] | None = None

    def function_declarations(self) -> list[dict[str, Any]]:
        declarations: list[dict[str, Any]] = []
        for group in self.tools or []:
            declarations.extend(group.get("functionDeclarations", []))
        return declarations

    def to_request(self) -> dict[str, Any]:
        """Render the request body in Gemini wire shape."""
        body: dict[str, Any] = {"contents": [content.to_dict() for content in self.contents]}
        if self.system_instruction is not None:
            body["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        if self.tools:
            body["tools"] = self.tools
        return body


def parse_summary_text(text: str) -> dict[str, Any]:
    """Parse a summary reply into a JSON object.

    Tries the whole text, then the outermost ``{...}`` block (models like to
    wrap JSON in markdown fences), then falls back to the raw text as summary.
    """
    try:
        value = json.loads(text)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        try:
            value = json.loads(text[start : end + 1])
            if isinstance(value, dict):
                log.warning("Parsed summary JSON from surrounding text")
                return value
        except json.JSONDecodeError:
            pass

    log.warning("Summary reply was not JSON, using raw text as summary")
    return {"summary": text, "entities": {}}


class ModelProvider(ABC):
    """Abstract base class for model endpoint clients."""

    @abstractmethod
    def stream_generate(self, prompt: PromptPackage) -> AsyncIterator[bytes]:
        """Stream the raw response body of a generation request."""
        pass

    @abstractmethod
    async def summarize(self, previous_summary: str, recent_turns: str) -> dict[str, Any]:
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class GeminiProvider(ModelProvider):
    """Direct Gemini API provider."""

    def __init__(
        self,
        model: str = "gemini-2.5-pro",
        summary_model: str = "gemini-1.5-flash-latest",
        api_key: str | None = None,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Gemini provider.

        Args:
            model: Chat model name (e.g., 'gemini-2.5-pro')
            summary_model: Model used for between-turn summaries
            api_key: API key; falls back to GEMINI_API_KEY
            base_url: Models endpoint base URL
            timeout: Request timeout in seconds
            client: Optional preconfigured HTTP client (tests inject a mock transport)
        """
        self.model = model
        self.summary_model = summary_model
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        self.base_url = base_url.rstrip("/")

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    async def stream_generate(self, prompt: PromptPackage) -> AsyncIterator[bytes]:
        """Stream raw SSE bytes from streamGenerateContent."""
        url = f"{self.base_url}/{self.model}:streamGenerateContent"
        body = prompt.to_request()

        try:
            log.debug("Calling Gemini", model=self.model, contents=len(prompt.contents))
            async with self.client.stream(
                "POST", url, params={"alt": "sse"}, json=body, headers=self._headers()
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Gemini API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Gemini streaming error: {e}")

    async def summarize(self, previous_summary: str, recent_turns: str) -> dict[str, Any]:
        """Ask the summary model to fold recent turns into the previous summary."""
        url = f"{self.base_url}/{self.summary_model}:generateContent"
        prompt = SUMMARY_PROMPT_TEMPLATE.format(
            previous_summary=previous_summary,
            recent_messages=recent_turns,
        )
        body = PromptPackage(contents=[Content(role="user", parts=[Part(text=prompt)])]).to_request()

        try:
            log.info("Using summary model", model=self.summary_model)
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Gemini HTTP error: {e}")

        if not response.is_success:
            raise LLMAPIError(
                f"Gemini API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Gemini response decode error: {e}")

        candidates = data.get("candidates") or []
        if not candidates:
            return {}
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            return {}
        log.debug("Raw summary reply", text=text)
        return parse_summary_text(text)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "gemini",
    model: str = "gemini-2.5-pro",
    summary_model: str = "gemini-1.5-flash-latest",
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 120.0,
) -> ModelProvider:
    """Create a model provider.

    Args:
        provider: Provider name (gemini)
        model: Chat model name
        summary_model: Summary model name
        api_key: Optional API key
        base_url: Optional base URL
        timeout: Request timeout in seconds

    Returns:
        Configured ModelProvider instance
    """
    if provider == "gemini":
        return GeminiProvider(
            model=model,
            summary_model=summary_model,
            api_key=api_key,
            base_url=base_url or GEMINI_BASE_URL,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'gemini' or configure manually.")
