"""Ollama ``/api/chat`` adapter."""

import json
import uuid
from typing import Any

import httpx

from synergy_core.exceptions import LLMAPIError, LLMError
from synergy_core.llm.base import LLMProvider, LLMResponse, ToolCall, ToolDefinition, Turn
from synergy_core.logging import get_logger

log = get_logger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"
CONTEXT_WINDOW = 65536


def _parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    """Ollama omits call ids and may send arguments as a JSON string."""
    function = raw.get("function") or {}
    arguments = function.get("arguments") or {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            arguments = {"raw": arguments}
    return ToolCall(
        id=str(raw.get("id") or f"ollama_call_{uuid.uuid4().hex[:12]}"),
        name=str(function.get("name", "")),
        arguments=arguments if isinstance(arguments, dict) else {},
    )


class OllamaProvider(LLMProvider):
    """Chat completions with tool calling against a local or remote Ollama."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = DEFAULT_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _convert_messages(self, messages: list[Turn], system_prompt: str | None = None) -> list[dict[str, Any]]:
        """Flatten turns into Ollama chat messages.

        Assistant tool_use blocks become ``tool_calls``; each tool_result block
        becomes its own ``tool`` message named after the call it answers.
        """
        converted: list[dict[str, Any]] = []
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})

        call_names: dict[str, str] = {}
        for turn in messages:
            text = "\n".join(b.text for b in turn.blocks() if b.type == "text" and b.text)

            if turn.role == "assistant":
                message: dict[str, Any] = {"role": "assistant", "content": text}
                calls = [b for b in turn.blocks() if b.type == "tool_use"]
                if calls:
                    message["tool_calls"] = [{"function": {"name": b.name, "arguments": b.input}} for b in calls]
                    call_names.update((b.id, b.name) for b in calls)
                converted.append(message)
                continue

            results = [b for b in turn.blocks() if b.type == "tool_result"]
            for block in results:
                message = {"role": "tool", "content": block.content}
                if block.tool_use_id in call_names:
                    message["tool_name"] = call_names[block.tool_use_id]
                converted.append(message)

            images = [b.data for b in turn.blocks() if b.type == "image" and b.data]
            if text or images or not results:
                message = {"role": "user", "content": text}
                if images:
                    message["images"] = images
                converted.append(message)

        return converted

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description or "", "parameters": t.parameters or {}},
            }
            for t in tools
            if t.name
        ]

    def _request_body(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        max_tokens: int | None,
        temperature: float | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages, system_prompt),
            "stream": False,
            "options": {
                "num_ctx": CONTEXT_WINDOW,
                "num_predict": max_tokens or self.max_tokens,
                "temperature": self.temperature if temperature is None else temperature,
            },
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _parse_response(self, data: dict[str, Any]) -> LLMResponse:
        message = data.get("message") or {}
        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        completion_tokens = int(data.get("eval_count") or 0)
        return LLMResponse(
            content=str(message.get("content") or ""),
            tool_calls=[_parse_tool_call(raw) for raw in message.get("tool_calls") or []],
            model=str(data.get("model") or self.model),
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )

    async def complete(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        url = f"{self.base_url}/api/chat"
        body = self._request_body(messages, tools, system_prompt, max_tokens, temperature)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        log.debug("Calling Ollama", model=self.model, messages=len(body["messages"]), tools=len(body.get("tools", [])))
        try:
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}") from e

        if not response.is_success:
            raise LLMAPIError(f"Ollama API error {response.status_code}: {response.text}", status_code=response.status_code)

        try:
            return self._parse_response(response.json())
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise LLMError(f"Ollama response could not be decoded: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()
