"""Shape raw capability output into text the model can consume."""

import json
from typing import Any

from synergy_core.config import get_config
from synergy_core.instructions import InstructionLoader
from synergy_core.llm import LLMProvider, Turn, create_provider
from synergy_core.logging import get_logger
from synergy_core.providers.base import CapabilityResult

log = get_logger(__name__)


def serialize_payload(data: Any) -> str:
    """Strings pass through; everything else becomes indented JSON."""
    if isinstance(data, str):
        return data
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def extract_context_note(result: Any) -> str | None:
    if isinstance(result, CapabilityResult):
        if result.context_note:
            return result.context_note
        result = result.data
    if isinstance(result, dict):
        note = result.get("contextNote") or result.get("context_note")
        if isinstance(note, str) and note.strip():
            return note.strip()
    return None


class ResultNormalizer:
    """Serialize, annotate and size-limit tool results.

    Oversized results are first compressed with an auxiliary model; when
    that is disabled, fails, or does not shrink the text, they are cut to
    ``truncate_budget`` characters with a trailing marker.
    """

    def __init__(
        self,
        aux_llm: LLMProvider | None = None,
        compress_threshold: int | None = None,
        truncate_budget: int | None = None,
        aux_enabled: bool | None = None,
        instructions: InstructionLoader | None = None,
    ):
        cfg = get_config().normalizer
        self._aux_llm = aux_llm
        self.compress_threshold = cfg.compress_threshold if compress_threshold is None else compress_threshold
        self.truncate_budget = cfg.truncate_budget if truncate_budget is None else truncate_budget
        self.aux_enabled = cfg.aux_enabled if aux_enabled is None else aux_enabled
        self.instructions = instructions or InstructionLoader()

    def _get_aux_llm(self) -> LLMProvider | None:
        if not self.aux_enabled:
            return None
        if self._aux_llm is None:
            cfg = get_config().normalizer
            self._aux_llm = create_provider(
                provider=cfg.aux_provider,
                model=cfg.aux_model,
                api_key=cfg.aux_api_key or None,
                base_url=cfg.aux_base_url or None,
                temperature=0.0,
                max_tokens=cfg.aux_max_tokens,
            )
        return self._aux_llm

    def to_text(self, result: Any) -> str:
        """Render a result without any size limiting."""
        if isinstance(result, CapabilityResult):
            if not result.success:
                return f"Error: {result.error}"
            data = result.data
        else:
            data = result

        body = "(no output)" if data is None else serialize_payload(data)
        note = extract_context_note(result)
        if note:
            return f"[Note: {note}]\n\n{body}"
        return body

    def truncate(self, text: str) -> str:
        return f"{text[:self.truncate_budget]}\n\n[truncated, {len(text)} chars originally]"

    async def normalize(self, result: Any, tool_name: str) -> str:
        """Return model-ready text for a tool result. Never raises."""
        try:
            text = self.to_text(result)
        except Exception as e:
            log.warning("Failed to serialize tool result", tool=tool_name, error=str(e))
            return f"Error: could not serialize result of {tool_name}: {e}"
        if len(text) <= self.compress_threshold:
            return text
        return await self.shrink(text, tool_name)

    async def shrink(self, text: str, tool_name: str) -> str:
        compressed = await self._compress(text, tool_name)
        if compressed is not None:
            log.info("Tool result compressed", tool=tool_name, original=len(text), compressed=len(compressed))
            return compressed
        log.info("Tool result truncated", tool=tool_name, original=len(text), budget=self.truncate_budget)
        return self.truncate(text)

    async def _compress(self, text: str, tool_name: str) -> str | None:
        try:
            llm = self._get_aux_llm()
        except Exception as e:
            log.warning("Auxiliary model unavailable", error=str(e))
            return None
        if llm is None:
            return None

        try:
            system_prompt = self.instructions.load("tool_result_compress_system_prompt.md")
            user_prompt = self.instructions.render(
                "tool_result_compress_user_prompt.md",
                tool_name=tool_name,
                original_chars=len(text),
                target_chars=self.truncate_budget,
                content=text,
            )
            response = await llm.complete(
                messages=[Turn(role="user", content=user_prompt)],
                system_prompt=system_prompt,
                max_tokens=get_config().normalizer.aux_max_tokens,
                temperature=0.0,
            )
        except Exception as e:
            log.warning("Tool result compression failed", tool=tool_name, error=str(e))
            return None

        compressed = (response.content or "").strip()
        if not compressed or len(compressed) >= len(text):
            return None
        return compressed
