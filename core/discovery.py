import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from urllib.robotparser import RobotFileParser
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from omegaconf import DictConfig

from core.errors import ValidationError
from core.models import DiscoveredPage, DiscoveryOrigin, DiscoveryResult
from core.utils import (
    NON_PAGE_EXTENSIONS, SITEMAP_PATTERN, get_domain, get_file_extension, get_origin,
    normalize_url, sanitize_url, url_matches_patterns,
)

logger = logging.getLogger(__name__)

COMMON_PATHS = ['/about', '/contact', '/products', '/services', '/blog', '/news', '/support', '/help', '/faq']
ECOMMERCE_PATHS = ['/category', '/shop', '/store', '/catalog', '/recipes', '/collections']
ECOMMERCE_DOMAIN_MARKERS = ('shop', 'store', 'chef')
MAX_FALLBACK_PAGES = 100
MAX_SITEMAP_DEPTH = 3
ROBOTS_USER_AGENT = "*"
SITEMAP_NAMESPACE_PATTERN = re.compile(r'^\{[^}]+\}')


def _tag_name(element) -> str:
    return SITEMAP_NAMESPACE_PATTERN.sub('', element.tag)


def parse_sitemap(xml_text: str) -> Tuple[List[str], List[str]]:
    """
    Parse a sitemap or sitemap index.

    Returns:
        Tuple[List[str], List[str]]: (page URLs, nested sitemap URLs)
    """
    try:
        root = ET.fromstring(xml_text.strip().encode('utf-8'))
    except ET.ParseError as e:
        logger.debug(f"Could not parse sitemap: {e}")
        return [], []

    pages, sitemaps = [], []
    is_index = _tag_name(root) == 'sitemapindex'
    for element in root.iter():
        if _tag_name(element) != 'loc' or not element.text:
            continue
        loc = element.text.strip()
        if is_index:
            sitemaps.append(loc)
        else:
            pages.append(loc)
    return pages, sitemaps


def sitemaps_from_robots(robots_txt: str) -> List[str]:
    res = []
    for line in robots_txt.splitlines():
        line = line.strip()
        if SITEMAP_PATTERN.match(line):
            res.append(line.split(':', 1)[1].strip())
    return res


def extract_links(html: str, base_url: str) -> List[str]:
    soup = BeautifulSoup(html, 'html.parser')
    links = []
    for a in soup.find_all('a', href=True):
        href = a['href'].strip()
        if not href or href.startswith(('#', 'mailto:', 'tel:', 'javascript:')):
            continue
        links.append(urljoin(base_url, href).split('#')[0])
    return links


def fallback_urls(start_url: str, max_pages: int) -> List[str]:
    """Best-guess page list used when comprehensive discovery is unavailable."""
    origin = get_origin(start_url)
    paths = list(COMMON_PATHS)
    if any(marker in get_domain(start_url) for marker in ECOMMERCE_DOMAIN_MARKERS):
        paths.extend(ECOMMERCE_PATHS)
    urls = [start_url] + [origin + path for path in paths]
    limit = min(max_pages, MAX_FALLBACK_PAGES)
    return urls[:limit]


class PageDiscoverer(object):
    """
    Turn a start URL into a bounded, deduplicated list of candidate pages.

    Discovery reads the site's sitemaps first and tops the list up with a
    breadth-first link crawl. If that fails or times out, a fixed list of
    common paths is used instead and the result is flagged as a fallback.

    Args:
        cfg (DictConfig): configuration, 'discovery' and 'crawl' sections are read
        fetcher: object with async ``fetch(url)`` and ``fetch_optional(url)`` methods
    """
    def __init__(self, cfg: DictConfig, fetcher):
        discovery_cfg = cfg.get('discovery', {})
        crawl_cfg = cfg.get('crawl', {})
        self.fetcher = fetcher
        self.timeout = discovery_cfg.get('timeout', 1200)
        self.use_sitemap = discovery_cfg.get('use_sitemap', True)
        self.use_crawl = discovery_cfg.get('use_crawl', True)
        self.keep_query_params = discovery_cfg.get('keep_query_params', False)
        self.default_max_depth = crawl_cfg.get('max_depth', 2)
        self.default_max_pages = crawl_cfg.get('max_pages', 50)
        self.default_pos_regex = list(discovery_cfg.get('pos_regex', []) or [])
        self.default_neg_regex = list(discovery_cfg.get('neg_regex', []) or [])

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _compile(self, patterns) -> List[re.Pattern]:
        try:
            return [re.compile(p) for p in patterns]
        except re.error as e:
            raise ValidationError(f"Invalid regex pattern: {e.pattern} - {e.msg}") from e

    def compile_patterns(self, include_patterns: Optional[List[str]] = None,
                         exclude_patterns: Optional[List[str]] = None) -> Tuple[List[re.Pattern], List[re.Pattern]]:
        """
        Compile include/exclude regexes, falling back to the configured defaults.

        Raises:
            ValidationError: for an invalid regex
        """
        pos_patterns = self._compile(include_patterns if include_patterns is not None else self.default_pos_regex)
        neg_patterns = self._compile(exclude_patterns if exclude_patterns is not None else self.default_neg_regex)
        return pos_patterns, neg_patterns

    def _is_candidate(self, url: str, domain: str, follow_external: bool,
                      pos_patterns: List[re.Pattern], neg_patterns: List[re.Pattern]) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            return False
        if get_file_extension(url) in NON_PAGE_EXTENSIONS:
            return False
        if not follow_external and get_domain(url) != domain:
            return False
        return url_matches_patterns(url, pos_patterns, neg_patterns)

    # -------------------------------------------------------------------------
    # strategies
    # -------------------------------------------------------------------------

    async def _read_robots(self, start_url: str) -> Optional[str]:
        res = await self.fetcher.fetch_optional(f"{get_origin(start_url)}/robots.txt")
        return res.body if res is not None else None

    async def _sitemap_urls(self, start_url: str, robots_txt: Optional[str]) -> List[str]:
        origin = get_origin(start_url)
        candidates = sitemaps_from_robots(robots_txt) if robots_txt else []
        if not candidates:
            candidates.append(f"{origin}/sitemap.xml")

        pages: List[str] = []
        seen: Set[str] = set()
        queue = [(u, 0) for u in candidates]
        while queue:
            sitemap_url, depth = queue.pop(0)
            if sitemap_url in seen or depth > MAX_SITEMAP_DEPTH:
                continue
            seen.add(sitemap_url)
            res = await self.fetcher.fetch_optional(sitemap_url)
            if res is None:
                continue
            new_pages, nested = parse_sitemap(res.body)
            pages.extend(new_pages)
            queue.extend((u, depth + 1) for u in nested)
        logger.info(f"Found {len(pages)} URLs in sitemaps of {origin}")
        return pages

    async def _crawl_urls(self, start_url: str, max_depth: int, max_pages: int, domain: str,
                          follow_external: bool, pos_patterns, neg_patterns,
                          known: Dict[str, DiscoveredPage]) -> List[DiscoveredPage]:
        found: List[DiscoveredPage] = []
        frontier = [(start_url, 0)]
        visited: Set[str] = set()
        while frontier and len(known) + len(found) < max_pages:
            url, depth = frontier.pop(0)
            key = normalize_url(url, self.keep_query_params)
            if key in visited:
                continue
            visited.add(key)
            if depth >= max_depth:
                continue
            res = await self.fetcher.fetch_optional(url)
            if res is None or res.content_type != 'html':
                continue
            for link in extract_links(res.body, res.url):
                link_key = normalize_url(link, self.keep_query_params)
                if link_key in known or link_key in visited or any(p.url == link for p in found):
                    continue
                if not self._is_candidate(link, domain, follow_external, pos_patterns, neg_patterns):
                    continue
                found.append(DiscoveredPage(url=link, depth=depth + 1, origin=DiscoveryOrigin.CRAWL))
                frontier.append((link, depth + 1))
            if found:
                logger.info(f"collected {len(known) + len(found)} URLs so far")
        return found

    async def _comprehensive(self, start_url: str, max_pages: int, max_depth: int, follow_external: bool,
                             pos_patterns, neg_patterns, respect_robots: bool = True) -> List[DiscoveredPage]:
        domain = get_domain(start_url)
        robots_txt = await self._read_robots(start_url) if (self.use_sitemap or respect_robots) else None
        robots = None
        if respect_robots and robots_txt:
            robots = RobotFileParser()
            robots.parse(robots_txt.splitlines())
        pages: Dict[str, DiscoveredPage] = {
            normalize_url(start_url, self.keep_query_params): DiscoveredPage(start_url, 0, DiscoveryOrigin.CRAWL)
        }

        def add(page: DiscoveredPage) -> None:
            key = normalize_url(page.url, self.keep_query_params)
            if robots is not None and not robots.can_fetch(ROBOTS_USER_AGENT, page.url):
                logger.debug(f"Skipping {page.url}, disallowed by robots.txt")
                return
            if key not in pages and len(pages) < max_pages:
                pages[key] = page

        if self.use_sitemap:
            for url in await self._sitemap_urls(start_url, robots_txt):
                if self._is_candidate(url, domain, follow_external, pos_patterns, neg_patterns):
                    add(DiscoveredPage(url=url, depth=0, origin=DiscoveryOrigin.SITEMAP))

        if self.use_crawl and len(pages) < max_pages:
            for page in await self._crawl_urls(start_url, max_depth, max_pages, domain, follow_external,
                                               pos_patterns, neg_patterns, pages):
                add(page)

        return list(pages.values())

    # -------------------------------------------------------------------------
    # public API
    # -------------------------------------------------------------------------

    async def discover(self, start_url: str, max_pages: Optional[int] = None, max_depth: Optional[int] = None,
                       follow_external_links: bool = False, include_patterns: Optional[List[str]] = None,
                       exclude_patterns: Optional[List[str]] = None, respect_robots: bool = True) -> DiscoveryResult:
        """
        Discover pages reachable from start_url.

        Args:
            start_url (str): where to start; sanitized and validated first
            max_pages (int): cap on the number of pages returned
            max_depth (int): link hops followed by the crawl strategy
            follow_external_links (bool): allow pages on other domains
            include_patterns (List[str]): regexes a page URL must match (any)
            exclude_patterns (List[str]): regexes a page URL must not match
            respect_robots (bool): drop pages disallowed by the site's robots.txt

        Returns:
            DiscoveryResult: deduplicated pages, start page first

        Raises:
            ValidationError: for a malformed start URL or invalid regex
        """
        start_url = sanitize_url(start_url)
        max_pages = max(1, max_pages or self.default_max_pages)
        max_depth = self.default_max_depth if max_depth is None else max_depth
        pos_patterns, neg_patterns = self.compile_patterns(include_patterns, exclude_patterns)
        domain = get_domain(start_url)

        reason = None
        try:
            pages = await asyncio.wait_for(
                self._comprehensive(start_url, max_pages, max_depth, follow_external_links, pos_patterns, neg_patterns,
                                    respect_robots),
                timeout=self.timeout,
            )
            # the start page alone means nothing was found beyond what we were given
            if len(pages) > 1 or max_pages == 1:
                logger.info(f"Discovered {len(pages)} pages on {domain}")
                return DiscoveryResult(domain=domain, start_url=start_url, pages=pages, strategy='comprehensive')
            reason = "comprehensive discovery found no pages beyond the start URL"
        except asyncio.TimeoutError:
            reason = f"comprehensive discovery timed out after {self.timeout}s"
        except ValidationError:
            raise
        except Exception as e:
            reason = f"comprehensive discovery failed: {e}"

        logger.warning(f"Falling back to pattern discovery for {domain}: {reason}")
        seen: Set[str] = set()
        pages = []
        for url in fallback_urls(start_url, max_pages):
            key = normalize_url(url, self.keep_query_params)
            if key in seen:
                continue
            seen.add(key)
            if url != start_url and not url_matches_patterns(url, pos_patterns, neg_patterns):
                continue
            pages.append(DiscoveredPage(url=url, depth=0 if url == start_url else 1,
                                        origin=DiscoveryOrigin.PATTERN_FALLBACK))
        return DiscoveryResult(domain=domain, start_url=start_url, pages=pages, strategy='fallback-patterns',
                               fallback=True, fallback_reason=reason)
