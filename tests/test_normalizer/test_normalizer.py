import json

import pytest

from synergy_core.llm import LLMProvider, LLMResponse, ToolDefinition, Turn
from synergy_core.normalizer import ResultNormalizer
from synergy_core.providers.base import CapabilityResult


class StubAuxProvider(LLMProvider):
    def __init__(self, reply: str = "", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system_prompt": system_prompt})
        if self.error:
            raise self.error
        return LLMResponse(content=self.reply)


def _normalizer(aux: LLMProvider | None = None, **kwargs) -> ResultNormalizer:
    kwargs.setdefault("compress_threshold", 100)
    kwargs.setdefault("truncate_budget", 40)
    return ResultNormalizer(aux_llm=aux, **kwargs)


@pytest.mark.asyncio
async def test_structured_data_is_indented_json():
    text = await _normalizer().normalize(CapabilityResult(data={"items": [1, 2]}), "search")
    assert text == json.dumps({"items": [1, 2]}, indent=2)


@pytest.mark.asyncio
async def test_strings_pass_through_and_raw_payloads_are_accepted():
    normalizer = _normalizer()
    assert await normalizer.normalize(CapabilityResult(data="plain"), "t") == "plain"
    assert await normalizer.normalize({"a": 1}, "t") == '{\n  "a": 1\n}'


@pytest.mark.asyncio
async def test_failed_result_is_error_text():
    text = await _normalizer().normalize(CapabilityResult(success=False, error="boom"), "t")
    assert text == "Error: boom"


@pytest.mark.asyncio
async def test_context_note_is_prepended():
    normalizer = _normalizer()

    from_result = await normalizer.normalize(
        CapabilityResult(data={"ok": True}, context_note="Page was modified"),
        "t",
    )
    assert from_result.startswith("[Note: Page was modified]\n\n")

    from_payload = await normalizer.normalize(
        CapabilityResult(data={"ok": True, "contextNote": "Selection changed"}),
        "t",
    )
    assert from_payload.startswith("[Note: Selection changed]\n\n")


@pytest.mark.asyncio
async def test_small_results_skip_compression():
    aux = StubAuxProvider(reply="short")
    text = await _normalizer(aux).normalize(CapabilityResult(data="x" * 100), "t")
    assert text == "x" * 100
    assert aux.calls == []


@pytest.mark.asyncio
async def test_oversized_result_is_compressed_by_aux_model():
    aux = StubAuxProvider(reply="  compressed summary  ")
    text = await _normalizer(aux).normalize(CapabilityResult(data="y" * 500), "jira_search")

    assert text == "compressed summary"
    assert len(aux.calls) == 1
    prompt = aux.calls[0]["messages"][0].content
    assert "jira_search" in prompt
    assert "500" in prompt
    assert "identifier" in aux.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_compression_failure_falls_back_to_exact_truncation():
    original = "z" * 500
    aux = StubAuxProvider(error=RuntimeError("no credentials"))

    text = await _normalizer(aux).normalize(CapabilityResult(data=original), "t")

    assert text == "z" * 40 + "\n\n[truncated, 500 chars originally]"


@pytest.mark.asyncio
async def test_empty_or_longer_compression_falls_back_to_truncation():
    original = "q" * 500
    for reply in ("", "   ", "r" * 600):
        text = await _normalizer(StubAuxProvider(reply=reply)).normalize(CapabilityResult(data=original), "t")
        assert text == "q" * 40 + "\n\n[truncated, 500 chars originally]"


@pytest.mark.asyncio
async def test_disabled_aux_model_truncates_without_calling():
    aux = StubAuxProvider(reply="short")
    text = await _normalizer(aux, aux_enabled=False).normalize(CapabilityResult(data="w" * 500), "t")

    assert text.endswith("[truncated, 500 chars originally]")
    assert aux.calls == []


@pytest.mark.asyncio
async def test_unserializable_payload_does_not_raise():
    class Weird:
        def __repr__(self):
            return "<weird>"

    text = await _normalizer().normalize(CapabilityResult(data={"obj": Weird()}), "t")
    assert "<weird>" in text
