import asyncio
import json
import time

import pytest

from synergy_core.catalog import ToolCatalogBuilder
from synergy_core.config import OrchestrationConfig
from synergy_core.context import ContextDetector
from synergy_core.exceptions import LLMAPIError
from synergy_core.llm import LLMProvider, LLMResponse, ToolCall, ToolDefinition, Turn
from synergy_core.normalizer import ResultNormalizer
from synergy_core.orchestrator import ITERATION_LIMIT_DISCLAIMER, Orchestrator, PageContext
from synergy_core.providers.base import Capability, CapabilityParameter, ClientBase, ProviderMetadata
from synergy_core.providers.registry import AgentRegistry, ProviderRegistry
from synergy_core.storage import MemoryConfigStore
from synergy_core.tool_session import ToolSessionManager


class SearchClient(ClientBase):
    metadata = ProviderMetadata(id="search", name="Search")

    def __init__(self):
        super().__init__()
        self.connects = 0

    def get_capabilities(self):
        return [
            Capability(
                name="search",
                description="Search items",
                parameters=[CapabilityParameter(name="query", required=True)],
            ),
            Capability(name="explode", description="Always fails"),
            Capability(name="slow", description="Never finishes in time"),
            Capability(name="nap", description="Sleeps briefly"),
        ]

    async def _connect(self):
        self.connects += 1

    async def execute_capability(self, name, parameters):
        return await self._dispatch(
            {"search": self._search, "explode": self._explode, "slow": self._slow, "nap": self._nap},
            name,
            parameters,
        )

    async def _search(self, params):
        return {"items": [f"result for {params['query']}"]}

    async def _explode(self, params):
        raise RuntimeError("kaboom")

    async def _slow(self, params):
        await asyncio.sleep(10)

    async def _nap(self, params):
        await asyncio.sleep(0.2)
        return "rested"


class TrackedSearchClient(SearchClient):
    instances: list["TrackedSearchClient"] = []

    def __init__(self):
        super().__init__()
        self.destroyed = False
        TrackedSearchClient.instances.append(self)

    async def destroy(self):
        await super().destroy()
        self.destroyed = True


class ScriptedProvider(LLMProvider):
    """Returns queued responses; the last one repeats forever."""

    def __init__(self, responses: list[LLMResponse]):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools, "system_prompt": system_prompt})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FailingProvider(LLMProvider):
    async def complete(self, messages, tools=None, system_prompt=None, max_tokens=None, temperature=None):
        raise LLMAPIError("Ollama API error 500: Internal Server Error", status_code=500)


class BlockingProvider(LLMProvider):
    def __init__(self):
        self.started = asyncio.Event()

    async def complete(self, messages, tools=None, system_prompt=None, max_tokens=None, temperature=None):
        self.started.set()
        await asyncio.sleep(3600)
        return LLMResponse(content="never")


def _call(name: str, call_id: str, **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def _orchestrator(
    llm: LLMProvider,
    events: list | None = None,
    client_cls: type[SearchClient] = SearchClient,
    isolate: bool = False,
    **config,
) -> Orchestrator:
    clients = ProviderRegistry()
    clients.register(client_cls)
    store = MemoryConfigStore()
    builder = ToolCatalogBuilder(clients, AgentRegistry(), store, substitute_agents=False, isolate_instances=isolate)
    session = ToolSessionManager(detector=ContextDetector(), always_on=["search"], pinned=[])
    config.setdefault("iteration_limit", 20)
    config.setdefault("tool_timeout", 5.0)
    return Orchestrator(
        catalog_builder=builder,
        session_manager=session,
        llm=llm,
        normalizer=ResultNormalizer(aux_enabled=False),
        store=store,
        config=OrchestrationConfig(**config),
        on_event=events.append if events is not None else None,
    )


@pytest.mark.asyncio
async def test_search_round_trip_finishes_after_two_iterations():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("search", "call_1", query="cats")], usage={"total_tokens": 10}),
        LLMResponse(content="Found one cat result.", usage={"total_tokens": 5}),
    ])
    events: list = []
    orchestrator = _orchestrator(llm, events)

    result = await orchestrator.run("find cats")

    assert result.status == "completed"
    assert result.final_text == "Found one cat result."
    assert result.iterations == 2
    assert result.tokens_used == 15
    assert result.hit_iteration_limit is False
    assert len(llm.calls) == 2

    assert [t.name for t in llm.calls[0]["tools"]] == ["search", "explode", "slow", "nap"]
    assert "- search: Search items" in llm.calls[0]["system_prompt"]

    second_messages = llm.calls[1]["messages"]
    assert [t.role for t in second_messages] == ["user", "assistant", "user"]
    tool_use = second_messages[1].blocks()[0]
    assert (tool_use.type, tool_use.id, tool_use.name) == ("tool_use", "call_1", "search")
    tool_result = second_messages[2].blocks()[0]
    assert tool_result.type == "tool_result"
    assert tool_result.tool_use_id == "call_1"
    assert tool_result.is_error is False
    assert json.loads(tool_result.content) == {"items": ["result for cats"]}

    assert result.history[-1].role == "assistant"
    assert result.history[-1].text() == "Found one cat result."
    assert [e.type for e in events] == ["run.started", "tool.started", "tool.completed", "run.final"]
    assert events[2].provider_id == "search"


@pytest.mark.asyncio
async def test_iteration_limit_appends_disclaimer_once():
    llm = ScriptedProvider([
        LLMResponse(content="Still working", tool_calls=[_call("search", "call_x", query="more")]),
    ])
    orchestrator = _orchestrator(llm, iteration_limit=3)

    result = await orchestrator.run("never ending task")

    assert result.status == "completed"
    assert result.hit_iteration_limit is True
    assert result.iterations == 3
    assert len(llm.calls) == 3
    assert result.final_text == "Still working" + ITERATION_LIMIT_DISCLAIMER
    assert result.final_text.count("maximum iteration limit") == 1


@pytest.mark.asyncio
async def test_one_failing_invocation_among_three_still_yields_three_results():
    llm = ScriptedProvider([
        LLMResponse(
            content="Running three tools",
            tool_calls=[
                _call("search", "a", query="one"),
                _call("explode", "b"),
                _call("search", "c", query="two"),
            ],
        ),
        LLMResponse(content="Done despite one failure."),
    ])
    orchestrator = _orchestrator(llm)

    result = await orchestrator.run("do three things")

    assert len(llm.calls) == 2
    first_batch = result.tool_results[:3]
    assert [r.invocation_id for r in first_batch] == ["a", "b", "c"]
    assert [r.is_error for r in first_batch] == [False, True, False]
    assert first_batch[1].content == "Error: kaboom"

    results_turn = llm.calls[1]["messages"][-1]
    assert len(results_turn.blocks()) == 3
    assert llm.calls[1]["messages"][-2].blocks()[0].text == "Running three tools"


@pytest.mark.asyncio
async def test_unknown_tool_name_yields_error_result():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("teleport", "t1")]),
        LLMResponse(content="I could not do that."),
    ])
    orchestrator = _orchestrator(llm)

    result = await orchestrator.run("teleport me")

    assert result.status == "completed"
    assert result.tool_results[0].is_error is True
    assert result.tool_results[0].content == "Error: Tool not found: teleport"
    assert result.tool_results[0].provider_id is None


@pytest.mark.asyncio
async def test_tool_timeout_is_reported_per_invocation():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("slow", "s1"), _call("search", "s2", query="q")]),
        LLMResponse(content="ok"),
    ])
    orchestrator = _orchestrator(llm, tool_timeout=0.05)

    result = await orchestrator.run("slow please")

    slow, fast = result.tool_results
    assert slow.is_error is True
    assert "timed out" in slow.content
    assert fast.is_error is False


@pytest.mark.asyncio
async def test_provider_initialized_just_in_time():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("search", "c1", query="x"), _call("search", "c2", query="y")]),
        LLMResponse(content="done"),
    ])
    orchestrator = _orchestrator(llm)

    await orchestrator.run("go")

    instance = orchestrator.catalog_builder.clients.get_instance("search")
    assert instance.is_ready is True
    assert instance.connects >= 1


@pytest.mark.asyncio
async def test_failing_initialize_becomes_error_result():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("search", "c1", query="x")]),
        LLMResponse(content="could not search"),
    ])
    orchestrator = _orchestrator(llm)
    instance = orchestrator.catalog_builder.clients.get_instance("search")

    async def refuse():
        raise ConnectionError("search backend down")

    instance._connect = refuse

    result = await orchestrator.run("go")

    assert result.status == "completed"
    assert result.tool_results[0].is_error is True
    assert result.tool_results[0].content == "Error: Tool 'search' failed: search backend down"
    assert result.final_text == "could not search"


@pytest.mark.asyncio
async def test_model_failure_aborts_with_error_and_keeps_history():
    events: list = []
    orchestrator = _orchestrator(FailingProvider(), events)
    history = [Turn(role="user", content="earlier"), Turn(role="assistant", content="reply")]

    result = await orchestrator.run("hello", history=history)

    assert result.status == "error"
    assert "500" in result.error
    assert len(history) == 2
    assert [t.role for t in result.history] == ["user", "assistant", "user"]
    assert result.history[-1].text() == "hello"
    assert events[-1].type == "run.error"


@pytest.mark.asyncio
async def test_cancel_event_stops_in_flight_run():
    llm = BlockingProvider()
    events: list = []
    orchestrator = _orchestrator(llm, events)
    cancel_event = asyncio.Event()

    task = asyncio.create_task(orchestrator.run("wait forever", cancel_event=cancel_event))
    await llm.started.wait()
    cancel_event.set()
    result = await task

    assert result.status == "cancelled"
    assert events[-1].type == "run.cancelled"


@pytest.mark.asyncio
async def test_orchestrator_cancel_and_new_run_cancels_previous():
    llm = BlockingProvider()
    orchestrator = _orchestrator(llm)
    assert orchestrator.cancel() is False

    first = asyncio.create_task(orchestrator.run("first"))
    await llm.started.wait()
    assert orchestrator.cancel() is True
    assert (await first).status == "cancelled"

    llm.started.clear()
    second = asyncio.create_task(orchestrator.run("second"))
    await llm.started.wait()
    third_llm = ScriptedProvider([LLMResponse(content="third done")])
    orchestrator.llm = third_llm
    third = await orchestrator.run("third")

    assert (await second).status == "cancelled"
    assert third.status == "completed"
    assert third.final_text == "third done"


@pytest.mark.asyncio
async def test_vanished_provider_is_removed_from_session():
    clients = ProviderRegistry()
    clients.register(SearchClient)
    store = MemoryConfigStore()
    builder = ToolCatalogBuilder(clients, AgentRegistry(), store, substitute_agents=False)
    session = ToolSessionManager(detector=ContextDetector(), always_on=[], pinned=["search"])

    class UnregisteringProvider(ScriptedProvider):
        async def complete(self, messages, tools=None, system_prompt=None, max_tokens=None, temperature=None):
            if not self.calls:
                clients.unregister("search")
            return await super().complete(messages, tools, system_prompt, max_tokens, temperature)

    llm = UnregisteringProvider([
        LLMResponse(content="", tool_calls=[_call("search", "v1", query="x")]),
        LLMResponse(content="gone"),
    ])
    orchestrator = Orchestrator(
        catalog_builder=builder,
        session_manager=session,
        llm=llm,
        normalizer=ResultNormalizer(aux_enabled=False),
        config=OrchestrationConfig(),
    )

    result = await orchestrator.run("search")

    assert result.tool_results[0].is_error is True
    assert result.tool_results[0].content == "Error: Provider not found: search"
    assert session.removed == {"search"}
    assert llm.calls[1]["tools"] is None


@pytest.mark.asyncio
async def test_page_context_updates_session_and_user_turn():
    llm = ScriptedProvider([LLMResponse(content="It is a Jira issue.")])
    orchestrator = _orchestrator(llm)
    page = PageContext(url="https://acme.atlassian.net/browse/PROJ-1", title="PROJ-1", text="Login broken")

    result = await orchestrator.run("what is this?", page_context=page)

    assert orchestrator.session_manager.current_url == page.url
    assert orchestrator.session_manager.is_active("jira")
    user_turn = result.history[0].text()
    assert "URL: https://acme.atlassian.net/browse/PROJ-1" in user_turn
    assert "Login broken" in user_turn
    assert user_turn.endswith("User question: what is this?")
    assert "PROJ-1" in llm.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_invocations_in_one_turn_run_concurrently():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("nap", "n1"), _call("nap", "n2"), _call("nap", "n3")]),
        LLMResponse(content="rested"),
    ])
    orchestrator = _orchestrator(llm)

    started = time.monotonic()
    result = await orchestrator.run("take three naps")
    elapsed = time.monotonic() - started

    assert [r.content for r in result.tool_results] == ["rested", "rested", "rested"]
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_just_in_time_initialize_runs_once_per_turn():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("search", "c1", query="x"), _call("search", "c2", query="y")]),
        LLMResponse(content="done"),
    ])
    orchestrator = _orchestrator(llm)
    instance = orchestrator.catalog_builder.clients.get_instance("search")

    async def slow_connect():
        await asyncio.sleep(0.05)
        instance.connects += 1

    instance._connect = slow_connect

    result = await orchestrator.run("go")

    assert [r.is_error for r in result.tool_results] == [False, False]
    assert instance.connects == 1


@pytest.mark.asyncio
async def test_just_in_time_initialize_counts_against_tool_timeout():
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("search", "c1", query="x")]),
        LLMResponse(content="gave up"),
    ])
    orchestrator = _orchestrator(llm, tool_timeout=0.1)
    instance = orchestrator.catalog_builder.clients.get_instance("search")

    async def hanging_connect():
        await asyncio.sleep(10)

    instance._connect = hanging_connect

    result = await orchestrator.run("go")

    assert result.tool_results[0].is_error is True
    assert "timed out" in result.tool_results[0].content
    assert result.final_text == "gave up"


@pytest.mark.asyncio
async def test_isolated_instances_are_destroyed_after_the_run():
    TrackedSearchClient.instances = []
    llm = ScriptedProvider([
        LLMResponse(content="", tool_calls=[_call("search", "c1", query="cats")]),
        LLMResponse(content="found"),
    ])
    orchestrator = _orchestrator(llm, client_cls=TrackedSearchClient, isolate=True)

    result = await orchestrator.run("find cats")

    assert result.tool_results[0].is_error is False
    assert TrackedSearchClient.instances
    assert all(instance.destroyed for instance in TrackedSearchClient.instances)


@pytest.mark.asyncio
async def test_shared_instances_survive_the_run():
    TrackedSearchClient.instances = []
    llm = ScriptedProvider([LLMResponse(content="hi")])
    orchestrator = _orchestrator(llm, client_cls=TrackedSearchClient)

    await orchestrator.run("hello")

    shared = orchestrator.catalog_builder.clients.get_instance("search")
    assert shared.destroyed is False
