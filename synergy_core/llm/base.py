"""Conversation types and the model boundary used by the orchestrator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

BlockType = Literal["text", "image", "tool_use", "tool_result"]


@dataclass
class ContentBlock:
    """One structured block of a conversation turn.

    Only the fields that belong to ``type`` are populated: ``text`` for text,
    ``data``/``media_type`` for base64 images, ``id``/``name``/``input`` for a
    tool invocation and ``tool_use_id``/``content``/``is_error`` for its result.
    """

    type: BlockType
    text: str = ""
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False
    media_type: str = ""
    data: str = ""

    @classmethod
    def text_block(cls, text: str) -> "ContentBlock":
        return cls(type="text", text=text)

    @classmethod
    def image_block(cls, data: str, media_type: str = "image/png") -> "ContentBlock":
        return cls(type="image", data=data, media_type=media_type)

    @classmethod
    def tool_use_block(cls, call: "ToolCall") -> "ContentBlock":
        return cls(type="tool_use", id=call.id, name=call.name, input=dict(call.arguments))

    @classmethod
    def tool_result_block(cls, tool_use_id: str, content: str, is_error: bool = False) -> "ContentBlock":
        return cls(type="tool_result", tool_use_id=tool_use_id, content=content, is_error=is_error)


@dataclass
class Turn:
    """One entry of the conversation log."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [ContentBlock.text_block(self.content)] if self.content else []
        return list(self.content)

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(block.text for block in self.content if block.type == "text" and block.text)


@dataclass
class ToolCall:
    """A capability invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolDefinition:
    """A capability as advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class LLMResponse:
    """One model reply: text, requested tool calls and token usage."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def tokens_used(self) -> int:
        return int(self.usage.get("total_tokens", 0) or 0)


class LLMProvider(ABC):
    """Anything that can answer a list of turns, optionally calling tools."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Return the model's reply.

        Raises:
            LLMError (or a subclass) when the model cannot be reached or
            its reply cannot be understood
        """

    async def close(self) -> None:
        return None
