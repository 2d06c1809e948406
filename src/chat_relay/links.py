from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional

import httpx
from bs4 import BeautifulSoup

from .config import LinkSettings
from .errors import FetchError, ParseError

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
URL_RE = re.compile(r"https?://\S+")
TAG_ALLOWLIST = ("title", "h1", "h2", "h3", "h4", "h5", "h6", "p", "li")
_WS_RUN = re.compile(r"\s{2,}")


# -----------------------------------------------------------------------------
# Extraction
# -----------------------------------------------------------------------------
def find_urls(text: str) -> List[str]:
    """Every http(s) URL in ``text``, in order, duplicates included."""
    return URL_RE.findall(text or "")


def extract_text(markup: str, tags: Iterable[str] = TAG_ALLOWLIST) -> List[str]:
    """Text fragments of the allow-listed tags, whitespace-collapsed and deduped.

    Dedupe keeps the first occurrence so fragments stay in document order.
    """
    try:
        soup = BeautifulSoup(markup, "html.parser")
        elements = soup.find_all(list(tags))
    except Exception as e:
        raise ParseError(f"failed to parse markup: {e}") from e

    seen: Dict[str, None] = {}
    for el in elements:
        fragment = _WS_RUN.sub(" ", el.get_text()).strip()
        if fragment:
            seen.setdefault(fragment, None)
    return list(seen)


def annotate(url: str, content: str) -> str:
    return f"{url} (Content: {content})"


# -----------------------------------------------------------------------------
# Augmenter
# -----------------------------------------------------------------------------
class LinkAugmenter:
    """Inline the readable text of linked pages into a user prompt.

    Best effort: a link whose fetch or parse fails is left as it was, and
    :meth:`augment` itself never raises because of a bad link.
    """

    def __init__(
        self,
        settings: Optional[LinkSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or LinkSettings()
        self._client = client
        self._transport = transport

    def _new_client(self) -> httpx.AsyncClient:
        headers = {
            "User-Agent": self.settings.user_agent,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.7",
        }
        return httpx.AsyncClient(
            timeout=self.settings.timeout,
            headers=headers,
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            r = await client.get(url)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise FetchError(f"fetch failed for {url}: {e}") from e
        return r.text

    async def describe(self, client: httpx.AsyncClient, url: str) -> Optional[str]:
        """Extracted page text for ``url``, or None if there is nothing usable."""
        markup = await self.fetch(client, url)
        fragments = extract_text(markup)
        if not fragments:
            return None
        content = " ".join(fragments)
        return content[: self.settings.max_chars].rstrip()

    async def augment(self, text: str) -> str:
        urls = find_urls(text)
        if not urls or not self.settings.enabled:
            return text

        if self._client is not None:
            replacements = await self._collect(self._client, urls)
        else:
            async with self._new_client() as client:
                replacements = await self._collect(client, urls)

        if not replacements:
            return text
        # Single pass over the original text so inserted content is never rescanned.
        return URL_RE.sub(lambda m: replacements.get(m.group(0), m.group(0)), text)

    async def _collect(self, client: httpx.AsyncClient, urls: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for url in urls:
            try:
                content = await self.describe(client, url)
            except (FetchError, ParseError) as e:
                logger.warning("link left unannotated: %s", e)
                continue
            if content and url not in out:
                out[url] = annotate(url, content)
        return out
