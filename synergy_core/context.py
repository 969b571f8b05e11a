"""Page context detection: map the URL being viewed to suggested providers."""

import re
import time
from dataclasses import dataclass, field
from typing import Literal
from urllib.parse import urlparse

from synergy_core.config import ContextRuleConfig, get_config
from synergy_core.logging import get_logger

log = get_logger(__name__)

Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class ContextRule:
    """URL/content rule that suggests a provider."""

    provider_id: str
    patterns: tuple[str, ...] = ()
    domain_hints: tuple[str, ...] = ()
    content_hints: tuple[str, ...] = ()
    priority: int = 0


@dataclass(frozen=True)
class ContextMatch:
    """A provider suggested for the current page."""

    provider_id: str
    reason: str
    confidence: Confidence
    matched_pattern: str | None = None
    matched_hint: str | None = None

    @property
    def display_reason(self) -> str:
        if self.confidence == "high":
            return f"Detected: on {self.provider_id[:1].upper()}{self.provider_id[1:]} page"
        if self.confidence == "medium":
            return f"Suggested: {self.matched_hint} detected in URL"
        return f"Suggested: {self.matched_hint} found in page content"


BUILTIN_RULES: tuple[ContextRule, ...] = (
    ContextRule(
        provider_id="jira",
        patterns=(
            "*://*.atlassian.net/browse/*",
            "*://*.atlassian.net/jira/*",
            "*://jira.*/*",
            "*://*.jira.com/*",
        ),
        domain_hints=("jira", "atlassian"),
        content_hints=("JIRA", "issue", "sprint", "backlog"),
        priority=10,
    ),
    ContextRule(
        provider_id="confluence",
        patterns=("*://*.atlassian.net/wiki/*", "*://confluence.*/*", "*://*.confluence.com/*"),
        domain_hints=("confluence", "wiki"),
        content_hints=("Confluence", "space", "page tree"),
        priority=10,
    ),
    ContextRule(
        provider_id="github",
        patterns=("*://github.com/*", "*://gist.github.com/*", "*://*.github.io/*"),
        domain_hints=("github",),
        content_hints=("GitHub", "repository", "pull request", "commit"),
        priority=10,
    ),
    ContextRule(
        provider_id="gitlab",
        patterns=("*://gitlab.com/*", "*://*.gitlab.com/*"),
        domain_hints=("gitlab",),
        content_hints=("GitLab", "merge request"),
        priority=10,
    ),
    ContextRule(
        provider_id="slack",
        patterns=("*://*.slack.com/*", "*://app.slack.com/*"),
        domain_hints=("slack",),
        content_hints=("Slack", "channel", "workspace"),
        priority=10,
    ),
    ContextRule(
        provider_id="notion",
        patterns=("*://www.notion.so/*", "*://notion.so/*"),
        domain_hints=("notion",),
        content_hints=("Notion",),
        priority=10,
    ),
    ContextRule(
        provider_id="linear",
        patterns=("*://linear.app/*",),
        domain_hints=("linear",),
        content_hints=("Linear", "issue", "project"),
        priority=10,
    ),
    ContextRule(
        provider_id="figma",
        patterns=("*://www.figma.com/*", "*://figma.com/*"),
        domain_hints=("figma",),
        content_hints=("Figma", "design", "prototype"),
        priority=10,
    ),
    ContextRule(
        provider_id="pinterest",
        patterns=("*://www.pinterest.com/*", "*://pinterest.com/*", "*://*.pinterest.com/*"),
        domain_hints=("pinterest",),
        content_hints=("Pinterest", "pin", "board"),
        priority=10,
    ),
)


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``*`` wildcard URL pattern into an anchored, case-insensitive regex."""
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE)


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def rule_from_config(rule: ContextRuleConfig) -> ContextRule:
    return ContextRule(
        provider_id=rule.provider_id,
        patterns=tuple(rule.patterns),
        domain_hints=tuple(rule.domain_hints),
        content_hints=tuple(rule.content_hints),
        priority=rule.priority,
    )


@dataclass
class _CacheEntry:
    matches: list[ContextMatch]
    expires_at: float


@dataclass
class ContextDetector:
    """Match URLs and page content against built-in and custom rules."""

    custom_rules: list[ContextRule] = field(default_factory=list)
    cache_ttl: float = 30.0
    include_builtin: bool = True
    _cache: dict[str, _CacheEntry] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def from_config(cls) -> "ContextDetector":
        cfg = get_config().context
        return cls(
            custom_rules=[rule_from_config(rule) for rule in cfg.rules],
            cache_ttl=cfg.cache_ttl_seconds,
        )

    def add_rule(self, rule: ContextRule) -> None:
        self.custom_rules.append(rule)
        self.clear_cache()

    def remove_rule(self, provider_id: str) -> None:
        self.custom_rules = [r for r in self.custom_rules if r.provider_id != provider_id]
        self.clear_cache()

    def get_all_rules(self) -> list[ContextRule]:
        """Built-in and custom rules, highest priority first (stable)."""
        rules = list(BUILTIN_RULES) if self.include_builtin else []
        rules.extend(self.custom_rules)
        return sorted(rules, key=lambda r: -r.priority)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _prune(self, now: float) -> None:
        for key in [k for k, entry in self._cache.items() if entry.expires_at <= now]:
            del self._cache[key]

    def detect(self, url: str, content: str | None = None) -> list[ContextMatch]:
        """Return at most one match per rule, in rule priority order."""
        cache_key = f"{url}:{(content or '')[:100]}"
        now = time.monotonic()
        cached = self._cache.get(cache_key)
        if cached is not None and cached.expires_at > now:
            return list(cached.matches)
        self._prune(now)

        matches: list[ContextMatch] = []
        seen: set[str] = set()
        domain = _hostname(url)
        content_lower = (content or "").lower()

        for rule in self.get_all_rules():
            if rule.provider_id in seen:
                continue
            match = self._match_rule(rule, url, domain, content_lower)
            if match is not None:
                matches.append(match)
                seen.add(rule.provider_id)

        self._cache[cache_key] = _CacheEntry(matches=matches, expires_at=now + self.cache_ttl)
        log.debug("Context detected", url=url, providers=[m.provider_id for m in matches])
        return list(matches)

    @staticmethod
    def _match_rule(rule: ContextRule, url: str, domain: str, content_lower: str) -> ContextMatch | None:
        for pattern in rule.patterns:
            if pattern_to_regex(pattern).match(url):
                return ContextMatch(
                    provider_id=rule.provider_id,
                    reason=f"URL matches pattern: {pattern}",
                    confidence="high",
                    matched_pattern=pattern,
                )
        for hint in rule.domain_hints:
            if domain and hint.lower() in domain:
                return ContextMatch(
                    provider_id=rule.provider_id,
                    reason=f'Domain contains "{hint}"',
                    confidence="medium",
                    matched_hint=hint,
                )
        if content_lower:
            for hint in rule.content_hints:
                if hint.lower() in content_lower:
                    return ContextMatch(
                        provider_id=rule.provider_id,
                        reason=f'Page content contains "{hint}"',
                        confidence="low",
                        matched_hint=hint,
                    )
        return None

    def is_suggested_for(self, provider_id: str, url: str, content: str | None = None) -> bool:
        return any(m.provider_id == provider_id for m in self.detect(url, content))
