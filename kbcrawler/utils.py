"""
Utility Functions
Host normalisation, registrable-domain lookup, retry logic, and content hashing.
"""

import asyncio
import hashlib
import logging
import random
import re
from typing import Any, Awaitable, Callable, Optional, Tuple, Type
from urllib.parse import urlparse

import tldextract
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

try:
    import lxml  # noqa: F401
    _BS_PARSER = 'lxml'
except ImportError:
    _BS_PARSER = 'html.parser'

# Offline extractor: bundled public-suffix snapshot, no HTTP fetch, no disk cache.
_TLD_EXTRACT = tldextract.TLDExtract(cache_dir=None, suffix_list_urls=())


def normalize_host(url: str) -> Optional[str]:
    """
    Extract the normalised host from an absolute http(s) URL.

    Lower-cases the host, strips the port and any trailing dot.

    Args:
        url: Absolute URL

    Returns:
        Host string, or None if the URL is not an absolute http(s) URL
    """
    if not url:
        return None
    url = url.strip()
    try:
        parsed = urlparse(url)
        host = parsed.hostname
    except ValueError:
        return None
    if parsed.scheme.lower() not in ('http', 'https') or not host:
        return None
    return host.rstrip('.')


def normalize_domain_key(value: str) -> str:
    """
    Normalise a credential domain key.

    Accepts a bare host (``Support.SAP.com``), a host with port, or a full URL.
    The ``www.`` prefix is dropped so one record serves both forms.
    """
    value = (value or '').strip().lower()
    if '://' in value:
        value = normalize_host(value) or ''
    else:
        value = value.split('/', 1)[0].split(':', 1)[0]
    value = value.rstrip('.')
    return value.removeprefix('www.')


def registrable_domain(host: str) -> str:
    """
    Return the registrable domain (public suffix + one label) for a host.

    ``launchpad.support.sap.com`` -> ``sap.com``.  Hosts without a known
    suffix (``localhost``, IP addresses, ``wiki.internal``) are returned as-is.
    """
    ext = _TLD_EXTRACT(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host


def domain_fallback_chain(domain_key: str) -> list:
    """
    Candidate keys for a credential lookup, most specific first.

    ``a.b.support.sap.com`` ->
    ``[a.b.support.sap.com, b.support.sap.com, support.sap.com, sap.com]``.
    The walk stops at the registrable domain, never at a bare suffix.
    """
    key = normalize_domain_key(domain_key)
    if not key:
        return []
    floor = registrable_domain(key)
    chain = [key]
    current = key
    while current != floor and '.' in current:
        current = current.split('.', 1)[1]
        chain.append(current)
    return chain


class RetryHandler:
    """
    Handles retry logic with exponential backoff.
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the retry handler.

        Args:
            max_retries: Maximum number of retry attempts after the first try
            base_delay: Initial delay between retries in seconds
            max_delay: Maximum delay between retries
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            sleep: Awaitable sleep function (replaceable in tests)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for given retry attempt.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Add random jitter (±25%)
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    async def run(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        retry_on: Tuple[Type[BaseException], ...],
        label: str = "",
    ) -> Any:
        """
        Await ``func()`` with retry logic.

        Only exceptions listed in ``retry_on`` are retried; anything else
        propagates immediately.

        Raises:
            Last exception if all retries fail
        """
        for attempt in range(self.max_retries + 1):
            try:
                return await func()
            except retry_on as e:
                if attempt >= self.max_retries:
                    logger.error(f"[RETRY] {label} all {self.max_retries + 1} attempts failed")
                    raise
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"[RETRY] {label} attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)


class ContentHasher:
    """
    Generates content hashes for detecting unchanged pages.
    """

    @staticmethod
    def hash_content(content: str) -> str:
        """Generate hash of page content."""
        # Normalize whitespace before hashing
        normalized = ' '.join(content.split())
        return hashlib.sha256(normalized.encode('utf-8')).hexdigest()


def html_to_text(html: str) -> str:
    """Visible text of an HTML document (scripts and styles dropped)."""
    soup = BeautifulSoup(html or '', _BS_PARSER)
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    return clean_text(soup.get_text(separator=' ', strip=True))


def page_title(html: str) -> str:
    soup = BeautifulSoup(html or '', _BS_PARSER)
    t = soup.find('title') or soup.find('h1')
    return t.get_text(strip=True) if t else ''


def clean_text(text: str) -> str:
    """Clean and normalize text content."""
    if not text:
        return ""

    # Replace multiple whitespace with single space
    text = re.sub(r'\s+', ' ', text)

    return text.strip()


def safe_file_name(value: str, max_length: int = 60) -> str:
    """Reduce arbitrary text to a filesystem-safe slug."""
    slug = re.sub(r'[^a-z0-9]+', '_', (value or '').lower()).strip('_')
    return slug[:max_length] or 'untitled'
