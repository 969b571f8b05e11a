"""Agentic loop between the language model and the active tool catalog."""

import asyncio
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from synergy_core.catalog import ToolBinding, ToolCatalog, ToolCatalogBuilder
from synergy_core.config import OrchestrationConfig, get_config
from synergy_core.exceptions import (
    CapabilityExecutionError,
    CapabilityNotFoundError,
    ProviderNotFoundError,
    RunCancelledError,
)
from synergy_core.instructions import InstructionLoader
from synergy_core.llm import ContentBlock, LLMProvider, LLMResponse, ToolCall, Turn, get_provider
from synergy_core.logging import get_logger, run_context
from synergy_core.normalizer import ResultNormalizer
from synergy_core.providers.base import CapabilityResult, Provider
from synergy_core.storage import ProviderConfigStore, ProviderRecord
from synergy_core.tool_session import ToolSessionManager

log = get_logger(__name__)

ITERATION_LIMIT_DISCLAIMER = (
    "\n\n⚠️ Note: Reached maximum iteration limit. The task may be incomplete. "
    "If needed, you can ask me to continue or try the request again."
)

RunStatus = Literal["completed", "error", "cancelled"]


@dataclass
class PageContext:
    """What the user is looking at when the message is sent."""

    url: str
    title: str = ""
    text: str = ""
    max_chars: int = 20000


@dataclass
class ToolResult:
    """Outcome of exactly one tool invocation."""

    invocation_id: str
    content: str
    is_error: bool
    tool_name: str
    provider_id: str | None = None


@dataclass
class RunEvent:
    """Progress notification for the presentation layer."""

    type: str  # run.started, tool.started, tool.completed, run.final, run.error, run.cancelled
    run_id: str
    iteration: int = 0
    content: str = ""
    tool_name: str | None = None
    provider_id: str | None = None
    is_error: bool = False


@dataclass
class RunResult:
    """Final state of one orchestration run."""

    run_id: str
    status: RunStatus
    final_text: str = ""
    history: list[Turn] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    iterations: int = 0
    tokens_used: int = 0
    hit_iteration_limit: bool = False
    error: str | None = None


EventCallback = Callable[[RunEvent], None]


class Orchestrator:
    """Drive model/tool turns for one conversation until the model answers.

    Only one run is live at a time: starting a run cancels a run that is
    still in flight.
    """

    def __init__(
        self,
        catalog_builder: ToolCatalogBuilder,
        session_manager: ToolSessionManager,
        llm: LLMProvider | None = None,
        normalizer: ResultNormalizer | None = None,
        store: ProviderConfigStore | None = None,
        config: OrchestrationConfig | None = None,
        on_event: EventCallback | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.catalog_builder = catalog_builder
        self.session_manager = session_manager
        self.llm = llm or get_provider()
        self.normalizer = normalizer or ResultNormalizer()
        self.store = store or catalog_builder.store
        self.config = config or get_config().orchestration
        self.on_event = on_event
        self.instructions = instructions or InstructionLoader()
        self._cancel_event: asyncio.Event | None = None
        self._prepare_locks: weakref.WeakKeyDictionary[Provider, asyncio.Lock] = weakref.WeakKeyDictionary()

    # Events

    def _emit(self, event: RunEvent) -> None:
        if not self.on_event:
            return
        try:
            self.on_event(event)
        except Exception as e:
            log.warning("Event callback failed", event=event.type, error=str(e))

    # Cancellation

    def cancel(self) -> bool:
        """Cancel the run in flight; returns False when nothing is running."""
        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        self._cancel_event.set()
        return True

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    async def _race(self, awaitable: Awaitable[Any], cancel_event: asyncio.Event, run_id: str) -> Any:
        """Await ``awaitable`` unless the cancel event fires first.

        Raises:
            RunCancelledError if the run is cancelled before completion
        """
        work = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            await self._cancel_task(work)
            raise RunCancelledError(run_id)
        except asyncio.CancelledError:
            await self._cancel_task(work)
            raise
        finally:
            await self._cancel_task(cancel_wait)

    # Prompt assembly

    @staticmethod
    def _compose_user_message(user_message: str, page_context: PageContext | None) -> str:
        if page_context is None:
            return user_message
        parts = [f"Current page: {page_context.title or page_context.url}", f"URL: {page_context.url}"]
        if page_context.text:
            text = page_context.text
            if len(text) > page_context.max_chars:
                text = text[:page_context.max_chars] + "\n... [page content truncated]"
            parts.append(f"\nPage content:\n{text}")
        parts.append(f"\nUser question: {user_message}")
        return "\n".join(parts)

    def _system_prompt(self, catalog: ToolCatalog, page_context: PageContext | None) -> str:
        if catalog.definitions:
            tool_list = "\n".join(f"- {d.name}: {d.description}" for d in catalog.definitions)
        else:
            tool_list = "(no tools available)"
        if page_context is not None:
            page = f"The user is viewing {page_context.title or 'a page'} at {page_context.url}."
        else:
            page = "No page context was provided."
        return self.instructions.render(
            "system_prompt.md",
            tool_list=tool_list,
            page_context=page,
            date=datetime.now().strftime("%Y-%m-%d"),
        )

    async def _build_catalog(self) -> ToolCatalog:
        session = self.session_manager
        catalog = await self.catalog_builder.build(
            session.get_active_client_ids(),
            suppressed=session.removed,
        )
        if not session.is_within_limit(len(catalog)):
            log.warning("Tool count exceeds limit", tools=len(catalog), limit=session.max_tools_limit)
        return catalog

    # Run

    async def run(
        self,
        user_message: str,
        history: list[Turn] | None = None,
        page_context: PageContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        """Run the loop for one user message.

        Args:
            user_message: Text the user submitted
            history: Earlier turns; copied, never mutated
            page_context: Page the user is viewing, if any
            cancel_event: Optional external cancellation signal

        Returns:
            RunResult; errors and cancellation are reported through ``status``
        """
        if self.cancel():
            log.info("Cancelled previous run in favour of a new one")
        cancel_event = cancel_event or asyncio.Event()
        self._cancel_event = cancel_event
        run_id = uuid.uuid4().hex[:12]

        messages = list(history or [])
        messages.append(Turn(role="user", content=self._compose_user_message(user_message, page_context)))
        result = RunResult(run_id=run_id, status="completed", history=messages)

        with run_context(run_id):
            log.info("Run started")
            self._emit(RunEvent(type="run.started", run_id=run_id, content=user_message))
            try:
                return await self._loop(result, page_context, cancel_event)
            except RunCancelledError:
                result.status = "cancelled"
                log.info("Run cancelled", iteration=result.iterations)
                self._emit(RunEvent(type="run.cancelled", run_id=run_id, iteration=result.iterations))
                return result
            finally:
                if self._cancel_event is cancel_event:
                    self._cancel_event = None

    async def _loop(
        self,
        result: RunResult,
        page_context: PageContext | None,
        cancel_event: asyncio.Event,
    ) -> RunResult:
        run_id = result.run_id

        if page_context is not None and page_context.url != self.session_manager.current_url:
            self.session_manager.update_context(page_context.url, page_context.text or None)

        catalogs = [await self._race(self._build_catalog(), cancel_event, run_id)]
        try:
            return await self._iterate(result, page_context, cancel_event, catalogs)
        finally:
            for catalog in catalogs:
                await catalog.close()

    async def _iterate(
        self,
        result: RunResult,
        page_context: PageContext | None,
        cancel_event: asyncio.Event,
        catalogs: list[ToolCatalog],
    ) -> RunResult:
        """Model/tool turns until an answer or the iteration limit.

        A catalog rebuilt mid-run is appended to ``catalogs`` so the caller
        can release every catalog once the run is over.
        """
        run_id = result.run_id
        messages = result.history
        catalog = catalogs[-1]
        limit = max(1, int(self.config.iteration_limit))
        final_text = ""

        for iteration in range(1, limit + 1):
            if cancel_event.is_set():
                raise RunCancelledError(run_id)
            result.iterations = iteration

            try:
                response: LLMResponse = await self._race(
                    self.llm.complete(
                        messages=list(messages),
                        tools=catalog.definitions or None,
                        system_prompt=self._system_prompt(catalog, page_context),
                        max_tokens=self.config.max_tokens,
                    ),
                    cancel_event,
                    run_id,
                )
            except RunCancelledError:
                raise
            except Exception as e:
                log.error("Model call failed", run_id=run_id, iteration=iteration, error=str(e))
                result.status = "error"
                result.error = str(e)
                self._emit(RunEvent(type="run.error", run_id=run_id, iteration=iteration, content=str(e), is_error=True))
                return result

            result.tokens_used += response.tokens_used
            final_text = response.content or ""

            if not response.tool_calls:
                messages.append(Turn(role="assistant", content=final_text))
                return self._finish(result, final_text)

            log.info("Dispatching tool calls", run_id=run_id, iteration=iteration, count=len(response.tool_calls))
            removed_before = self.session_manager.removed
            tool_results = await self._race(
                self._dispatch_all(response.tool_calls, catalog, run_id, iteration),
                cancel_event,
                run_id,
            )
            result.tool_results.extend(tool_results)

            assistant_blocks: list[ContentBlock] = []
            if response.content:
                assistant_blocks.append(ContentBlock.text_block(response.content))
            assistant_blocks.extend(ContentBlock.tool_use_block(call) for call in response.tool_calls)
            messages.append(Turn(role="assistant", content=assistant_blocks))
            messages.append(
                Turn(
                    role="user",
                    content=[
                        ContentBlock.tool_result_block(r.invocation_id, r.content, is_error=r.is_error)
                        for r in tool_results
                    ],
                )
            )

            if self.session_manager.removed != removed_before and iteration < limit:
                catalog = await self._race(self._build_catalog(), cancel_event, run_id)
                catalogs.append(catalog)

        log.warning("Iteration limit reached", run_id=run_id, limit=limit)
        result.hit_iteration_limit = True
        final_text += ITERATION_LIMIT_DISCLAIMER
        messages.append(Turn(role="assistant", content=final_text))
        return self._finish(result, final_text)

    def _finish(self, result: RunResult, final_text: str) -> RunResult:
        result.final_text = final_text
        log.info(
            "Run complete",
            run_id=result.run_id,
            iterations=result.iterations,
            tokens=result.tokens_used,
            hit_limit=result.hit_iteration_limit,
        )
        self._emit(RunEvent(type="run.final", run_id=result.run_id, iteration=result.iterations, content=final_text))
        return result

    # Dispatch

    async def _dispatch_all(
        self,
        calls: list[ToolCall],
        catalog: ToolCatalog,
        run_id: str,
        iteration: int,
    ) -> list[ToolResult]:
        """Run every invocation concurrently; results keep invocation order."""
        return list(await asyncio.gather(*(self._dispatch(call, catalog, run_id, iteration) for call in calls)))

    def _binding_vanished(self, binding: ToolBinding) -> bool:
        registry = self.catalog_builder.clients if binding.kind == "client" else self.catalog_builder.agents
        return not registry.has(binding.provider_id)

    async def _prepare_and_run(self, binding: ToolBinding, call: ToolCall) -> Any:
        """Initialize the provider once if needed, then run the capability.

        Invocations of one provider in the same turn share a lock so only
        the first performs the just-in-time initialization.
        """
        if not binding.instance.is_ready:
            lock = self._prepare_locks.setdefault(binding.instance, asyncio.Lock())
            async with lock:
                if not binding.instance.is_ready:
                    await self._prepare(binding)
        return await binding.instance.execute_capability(call.name, dict(call.arguments or {}))

    async def _prepare(self, binding: ToolBinding) -> None:
        """Load stored inputs and initialize a provider that is not ready."""
        if binding.kind == "client":
            record = await self.store.get_client_record(binding.provider_id)
        else:
            record = await self.store.get_agent_record(binding.provider_id)
        record = record or ProviderRecord()
        provider = binding.instance
        if binding.kind == "client":
            provider.set_credentials(record.credentials)
        provider.set_config(record.config)
        await provider.initialize()

    async def _dispatch(self, call: ToolCall, catalog: ToolCatalog, run_id: str, iteration: int) -> ToolResult:
        binding = catalog.get(call.name)
        provider_id = binding.provider_id if binding else None
        self._emit(
            RunEvent(type="tool.started", run_id=run_id, iteration=iteration, tool_name=call.name, provider_id=provider_id)
        )

        if binding is None:
            log.warning("Tool not found", tool=call.name)
            outcome = CapabilityResult(success=False, error=str(CapabilityNotFoundError(call.name)))
        elif self._binding_vanished(binding):
            log.warning("Provider vanished from registry", tool=call.name, provider=binding.provider_id)
            self.session_manager.remove(binding.provider_id)
            outcome = CapabilityResult(success=False, error=str(ProviderNotFoundError(binding.provider_id)))
        else:
            outcome = await self._execute(binding, call)

        content = await self.normalizer.normalize(outcome, call.name)
        tool_result = ToolResult(
            invocation_id=call.id,
            content=content,
            is_error=not outcome.success,
            tool_name=call.name,
            provider_id=provider_id,
        )
        self._emit(
            RunEvent(
                type="tool.completed",
                run_id=run_id,
                iteration=iteration,
                content=content,
                tool_name=call.name,
                provider_id=provider_id,
                is_error=tool_result.is_error,
            )
        )
        return tool_result

    async def _execute(self, binding: ToolBinding, call: ToolCall) -> CapabilityResult:
        timeout = float(self.config.tool_timeout)
        try:
            outcome = await asyncio.wait_for(self._prepare_and_run(binding, call), timeout=timeout)
        except asyncio.TimeoutError:
            label = int(timeout) if timeout.is_integer() else timeout
            log.warning("Tool timed out", tool=call.name, provider=binding.provider_id, timeout=label)
            return CapabilityResult(success=False, error=f"Execution timed out after {label}s")
        except Exception as e:
            error = CapabilityExecutionError(call.name, str(e) or e.__class__.__name__)
            log.error("Tool execution failed", tool=call.name, provider=binding.provider_id, error=str(e))
            return CapabilityResult(success=False, error=str(error))
        if not isinstance(outcome, CapabilityResult):
            return CapabilityResult(success=True, data=outcome)
        return outcome
