"""Always-on page client: readable text and links of the page being viewed."""

import re
from typing import Any
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
import httpx

from synergy_core.logging import get_logger
from synergy_core.providers.base import (
    Capability,
    CapabilityParameter,
    CapabilityResult,
    ClientBase,
    ProviderMetadata,
)

log = get_logger(__name__)


class BrowserClient(ClientBase):
    """Fetch and read web pages the user is looking at."""

    metadata = ProviderMetadata(
        id="browser",
        name="Browser",
        description="Read the text, links and metadata of web pages",
        version="1.0.0",
        author="Synergy",
        tags=("browser", "page", "web"),
    )

    def __init__(self):
        super().__init__()
        self.client = httpx.AsyncClient(
            timeout=30.0,
            follow_redirects=True,
            headers={"User-Agent": "Synergy/0.1.0 (Browser Client)"},
        )

    def get_capabilities(self) -> list[Capability]:
        return [
            Capability(
                name="browser_get_page_text",
                description="Extract the readable text of a web page. Use it to read the page the user is viewing.",
                parameters=[
                    CapabilityParameter(name="url", type="string", description="Page URL", required=True),
                    CapabilityParameter(
                        name="max_chars",
                        type="number",
                        description="Maximum characters to return (default: 100000)",
                        default=100000,
                    ),
                ],
            ),
            Capability(
                name="browser_get_page_links",
                description="List the links on a web page with their labels and absolute URLs.",
                parameters=[
                    CapabilityParameter(name="url", type="string", description="Page URL", required=True),
                    CapabilityParameter(
                        name="same_host_only",
                        type="boolean",
                        description="Only return links on the page's own host",
                        default=False,
                    ),
                    CapabilityParameter(
                        name="limit",
                        type="number",
                        description="Maximum links to return (default: 100)",
                        default=100,
                    ),
                ],
            ),
        ]

    async def execute_capability(self, name: str, parameters: dict[str, Any]) -> CapabilityResult:
        return await self._dispatch(
            {
                "browser_get_page_text": self._get_page_text,
                "browser_get_page_links": self._get_page_links,
            },
            name,
            parameters,
        )

    async def _fetch(self, url: str) -> httpx.Response:
        cleaned = (url or "").strip()
        if not cleaned:
            raise ValueError("Missing required url")
        log.info("Fetching page", url=cleaned)
        response = await self.client.get(cleaned)
        response.raise_for_status()
        return response

    async def _get_page_text(self, params: dict[str, Any]) -> CapabilityResult:
        url = str(params.get("url", ""))
        max_chars = max(1, int(params.get("max_chars") or 100000))
        response = await self._fetch(url)
        title, text = extract_readable_text(response.text, base_url=url)
        if len(text) > max_chars:
            text = text[:max_chars] + "\n... [truncated]"
        return CapabilityResult(
            success=True,
            data={"url": url, "status": response.status_code, "title": title, "text": text},
            context_note=(
                f"Text of {url} was fetched from the server; content rendered only by "
                "scripts in the user's tab may be missing."
            ),
        )

    async def _get_page_links(self, params: dict[str, Any]) -> dict[str, Any]:
        url = str(params.get("url", ""))
        limit = max(1, int(params.get("limit") or 100))
        same_host_only = bool(params.get("same_host_only", False))
        response = await self._fetch(url)
        links = extract_links(response.text, base_url=url)
        if same_host_only:
            host = urlparse(url).hostname
            links = [link for link in links if urlparse(link["href"]).hostname == host]
        return {"url": url, "count": len(links), "links": links[:limit]}

    async def destroy(self) -> None:
        await super().destroy()
        await self.client.aclose()


def extract_readable_text(html: str, base_url: str | None = None) -> tuple[str, str]:
    """Return (title, readable text) from raw HTML."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
        tag.decompose()

    for anchor in soup.find_all("a"):
        href = (anchor.get("href") or "").strip()
        label = anchor.get_text(" ", strip=True)
        if not href:
            continue
        absolute = urljoin(base_url, href) if base_url else href
        anchor.replace_with(f"{label} ({absolute})" if label else absolute)

    title = soup.title.string.strip() if soup.title and soup.title.string else ""

    lines: list[str] = []
    for line in soup.get_text(separator="\n").splitlines():
        cleaned = re.sub(r"\s+", " ", line).strip()
        if cleaned:
            lines.append(cleaned)
    return title, "\n".join(lines)


def extract_links(html: str, base_url: str | None = None) -> list[dict[str, str]]:
    """Return unique links as ``{"text", "href"}`` in document order."""
    soup = BeautifulSoup(html, "html.parser")
    seen: set[str] = set()
    links: list[dict[str, str]] = []
    for anchor in soup.find_all("a"):
        href = (anchor.get("href") or "").strip()
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        absolute = urljoin(base_url, href) if base_url else href
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append({"text": anchor.get_text(" ", strip=True), "href": absolute})
    return links
