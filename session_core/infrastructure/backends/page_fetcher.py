"""
Fetches a web page and reduces it to readable context for the assistant.

Outbound URLs are restricted to public http(s) hosts, optionally to an allow
list of domains, and bodies are capped before parsing.
"""

from typing import Dict, Any, List, Optional
from urllib.parse import urlparse
import asyncio
import ipaddress
import math
import re
import aiohttp
import structlog
from bs4 import BeautifulSoup

from session_core.domain.models.errors import ProviderError, ValidationError

logger = structlog.get_logger(__name__)

MAX_BODY_BYTES = 5_000_000
MAX_TEXT_CHARS = 50_000
WORDS_PER_MINUTE = 200
USER_AGENT = "Mozilla/5.0 (compatible; session-core/0.1)"
HTML_TYPES = ("text/html", "application/xhtml+xml")


def count_words(text: str) -> int:
    return len(text.split())


def describe_text(text: str, url: Optional[str] = None, title: Optional[str] = None) -> Dict[str, Any]:
    """Context summary for already extracted text"""

    words = count_words(text)
    return {
        "url": url,
        "title": title or "Provided Text",
        "description": text.strip()[:160],
        "word_count": words,
        "reading_time": max(1, math.ceil(words / WORDS_PER_MINUTE)),
        "extracted_text": text[:MAX_TEXT_CHARS],
    }


def _is_public_host(host: str) -> bool:
    if host in ("localhost",) or host.endswith(".localhost") or host.endswith(".internal"):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        # a name; resolution happens in the client
        return True
    return address.is_global


class PageFetcher:
    """Guarded page fetcher"""

    def __init__(
        self,
        allowed_domains: Optional[List[str]] = None,
        timeout_seconds: float = 10.0,
        max_bytes: int = MAX_BODY_BYTES,
    ):
        self.allowed_domains = [d.lower() for d in (allowed_domains or []) if d]
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes

    def validate_url(self, url: str) -> str:
        """Normalize a URL and reject non-public or non-allowed targets"""

        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValidationError("Only absolute http(s) URLs can be fetched")

        host = parsed.hostname.lower()
        if not _is_public_host(host):
            raise ValidationError(f"Host '{host}' is not reachable from this service")

        if self.allowed_domains and not any(
            host == domain or host.endswith("." + domain) for domain in self.allowed_domains
        ):
            raise ValidationError(f"Domain '{host}' is not allowed")

        return parsed.geturl()

    @staticmethod
    def extract(html: str, url: str) -> Dict[str, Any]:
        """Title, description and main text of an HTML document"""

        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(["script", "style", "noscript", "nav", "footer", "header", "svg"]):
            tag.decompose()

        title = soup.title.get_text(strip=True) if soup.title else None
        meta = soup.find("meta", attrs={"name": "description"}) or soup.find("meta", attrs={"property": "og:description"})
        description = meta.get("content") if meta else None

        main = soup.find("main") or soup.find("article") or soup.body or soup
        text = re.sub(r"\s+", " ", main.get_text(" ", strip=True))

        summary = describe_text(text, url=url, title=title)
        if description:
            summary["description"] = description.strip()[:160]
        return summary

    async def fetch(self, url: str) -> Dict[str, Any]:
        validated = self.validate_url(url)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        headers = {"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5"}

        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.get(validated, allow_redirects=True, max_redirects=3) as resp:
                    if resp.status != 200:
                        raise ProviderError(f"Page returned HTTP {resp.status}")

                    content_type = resp.headers.get("Content-Type", "")
                    if not any(kind in content_type for kind in HTML_TYPES):
                        raise ValidationError(f"Unsupported content type '{content_type or 'unknown'}'")
                    if resp.content_length is not None and resp.content_length > self.max_bytes:
                        raise ValidationError("Page is larger than the 5 MB limit")

                    body = bytearray()
                    async for chunk in resp.content.iter_chunked(64 * 1024):
                        body.extend(chunk)
                        if len(body) > self.max_bytes:
                            raise ValidationError("Page is larger than the 5 MB limit")
                    html = body.decode(resp.charset or "utf-8", errors="replace")
        except asyncio.CancelledError:
            raise
        except (ValidationError, ProviderError):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Page fetch failed", url=validated, error=str(e))
            raise ProviderError(f"Could not fetch page: {type(e).__name__}") from e

        logger.info("Page fetched", url=validated, size=len(body))
        return self.extract(html, validated)
