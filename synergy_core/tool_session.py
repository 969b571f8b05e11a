"""Per-conversation working set of providers offered to the model."""

from dataclasses import dataclass
from typing import Callable, Literal

from synergy_core.config import get_config
from synergy_core.context import Confidence, ContextDetector
from synergy_core.logging import get_logger

log = get_logger(__name__)

ToolSource = Literal["always-on", "context-suggested", "user-pinned"]

ALWAYS_ON: ToolSource = "always-on"
CONTEXT_SUGGESTED: ToolSource = "context-suggested"
USER_PINNED: ToolSource = "user-pinned"


@dataclass(frozen=True)
class ToolEntry:
    """One provider in the working set and why it is there."""

    provider_id: str
    source: ToolSource
    reason: str | None = None
    confidence: Confidence | None = None


SessionCallback = Callable[[tuple[ToolEntry, ...]], None]


class ToolSessionManager:
    """Tracks always-on, context-suggested and user-pinned providers.

    Every state transition broadcasts the resulting working set to
    subscribers. The manager knows nothing about credentials; whether a
    provider is usable is decided when the tool catalog is built.
    """

    def __init__(
        self,
        detector: ContextDetector | None = None,
        always_on: list[str] | None = None,
        pinned: list[str] | None = None,
        max_tools: int | None = None,
    ):
        cfg = get_config().session
        self.detector = detector or ContextDetector.from_config()
        self._always_on: list[str] = list(dict.fromkeys(cfg.always_on if always_on is None else always_on))
        self._pinned: list[str] = list(dict.fromkeys(cfg.pinned if pinned is None else pinned))
        self._max_tools = cfg.max_tools if max_tools is None else max_tools
        self._suggested: list[ToolEntry] = []
        self._removed: set[str] = set()
        # provider id -> URL the dismissal was made on
        self._dismissed: dict[str, str | None] = {}
        self.current_url: str | None = None
        self._subscribers: list[SessionCallback] = []

    # Observers

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        working_set = tuple(self.get_active_tools())
        for callback in list(self._subscribers):
            try:
                callback(working_set)
            except Exception as e:
                log.warning("Tool session subscriber failed", error=str(e))

    # Transitions

    def update_context(self, url: str, content: str | None = None) -> None:
        """Recompute context suggestions for the page being viewed."""
        if url != self.current_url:
            lifted = [pid for pid, at in self._dismissed.items() if at != url]
            for provider_id in lifted:
                del self._dismissed[provider_id]
            if lifted:
                log.debug("Dismissals lifted on navigation", providers=lifted, url=url)
        self.current_url = url

        matches = self.detector.detect(url, content)
        self._suggested = [
            ToolEntry(
                provider_id=match.provider_id,
                source=CONTEXT_SUGGESTED,
                reason=match.display_reason,
                confidence=match.confidence,
            )
            for match in matches
        ]
        log.info("Tool context updated", url=url, suggested=[e.provider_id for e in self._suggested])
        self._notify()

    def pin(self, provider_id: str) -> None:
        if provider_id not in self._pinned:
            self._pinned.append(provider_id)
        self._removed.discard(provider_id)
        self._notify()

    def unpin(self, provider_id: str) -> None:
        self._pinned = [pid for pid in self._pinned if pid != provider_id]
        self._notify()

    def dismiss(self, provider_id: str) -> None:
        """Hide a context suggestion while the user stays on the current page."""
        if provider_id in self._always_on:
            log.warning("Cannot dismiss always-on tool", provider=provider_id)
            return
        self._dismissed[provider_id] = self.current_url
        self._notify()

    def remove(self, provider_id: str) -> None:
        """Drop a provider from the working set until restored or reset."""
        if provider_id in self._always_on:
            log.warning("Cannot remove always-on tool", provider=provider_id)
            return
        self._removed.add(provider_id)
        self._pinned = [pid for pid in self._pinned if pid != provider_id]
        log.info("Tool removed from session", provider=provider_id)
        self._notify()

    def restore(self, provider_id: str) -> None:
        self._removed.discard(provider_id)
        self._dismissed.pop(provider_id, None)
        self._notify()

    def reset(self) -> None:
        """Clear suggestions, removals, dismissals and the URL; pins are kept."""
        self._suggested = []
        self._removed.clear()
        self._dismissed.clear()
        self.current_url = None
        self._notify()

    # Queries

    @property
    def pinned(self) -> list[str]:
        return list(self._pinned)

    @property
    def always_on(self) -> list[str]:
        return list(self._always_on)

    @property
    def removed(self) -> set[str]:
        return set(self._removed)

    def is_suppressed(self, provider_id: str) -> bool:
        return provider_id in self._removed or provider_id in self._dismissed

    def get_active_tools(self) -> list[ToolEntry]:
        """Working set ordered always-on, pinned, suggested; first source wins."""
        entries: list[ToolEntry] = []
        added: set[str] = set()

        for provider_id in self._always_on:
            if provider_id not in added:
                entries.append(ToolEntry(provider_id=provider_id, source=ALWAYS_ON))
                added.add(provider_id)

        for provider_id in self._pinned:
            if provider_id not in added and provider_id not in self._removed:
                entries.append(ToolEntry(provider_id=provider_id, source=USER_PINNED))
                added.add(provider_id)

        for entry in self._suggested:
            if entry.provider_id not in added and not self.is_suppressed(entry.provider_id):
                entries.append(entry)
                added.add(entry.provider_id)

        return entries

    def get_active_client_ids(self) -> list[str]:
        return [entry.provider_id for entry in self.get_active_tools()]

    def is_active(self, provider_id: str) -> bool:
        return provider_id in self.get_active_client_ids()

    @property
    def max_tools_limit(self) -> int:
        return self._max_tools

    def is_within_limit(self, tool_count: int) -> bool:
        return tool_count <= self._max_tools
