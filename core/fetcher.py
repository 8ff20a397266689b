import logging
from typing import Optional

import requests
from omegaconf import DictConfig

from core.errors import FatalCallFailure, TransientCallFailure
from core.executor import CallExecutor, RETRYABLE_STATUS_CODES
from core.models import RawFetchResult
from core.sanitizer import detect_content_type
from core.utils import create_session_with_retries, configure_session_for_ssl, get_headers

logger = logging.getLogger(__name__)


class PageFetcher(object):
    """
    Fetch pages over HTTP through a CallExecutor.

    The underlying requests session does not retry on its own; failures are
    mapped onto TransientCallFailure / FatalCallFailure and the executor decides
    whether to try again.
    """
    def __init__(self, cfg: DictConfig, executor: CallExecutor, session: Optional[requests.Session] = None):
        fetch_cfg = cfg.get('fetch', {})
        self.timeout = fetch_cfg.get('timeout', 30)
        self.executor = executor
        self.headers = get_headers(cfg)
        if session is None:
            session = create_session_with_retries(retries=0)
            configure_session_for_ssl(session, fetch_cfg)
        self.session = session

    def _get(self, url: str, timeout: Optional[float] = None) -> RawFetchResult:
        try:
            response = self.session.get(url, headers=self.headers, timeout=timeout or self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientCallFailure(f"Timeout fetching {url}: {e}")
        except requests.exceptions.ConnectionError as e:
            raise TransientCallFailure(f"Connection error fetching {url}: {e}")
        except requests.exceptions.RequestException as e:
            raise FatalCallFailure(f"Error fetching {url}: {e}")

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientCallFailure(f"HTTP {response.status_code} fetching {url}", status_code=response.status_code)
        if response.status_code == 404:
            raise FatalCallFailure(f"Error 404 - URL not found: {url}", status_code=404)
        if response.status_code in (401, 403):
            raise FatalCallFailure(f"Error {response.status_code} - Access forbidden: {url}", status_code=response.status_code)
        if response.status_code >= 400:
            raise FatalCallFailure(
                f"HTTP {response.status_code} fetching {url} (reason={response.reason})",
                status_code=response.status_code,
            )

        body = response.text
        return RawFetchResult(
            url=response.url or url,
            body=body,
            content_type=detect_content_type(body),
            status_code=response.status_code,
        )

    async def fetch(self, url: str, timeout: Optional[float] = None) -> RawFetchResult:
        """Fetch one page, rate limited and retried by the executor."""
        logger.info(f"Fetching {url}")
        return await self.executor.run_sync(self._get, url, timeout, operation=f"fetch {url}")

    async def fetch_optional(self, url: str, timeout: Optional[float] = None) -> Optional[RawFetchResult]:
        """Single attempt fetch that returns None on any HTTP failure (robots.txt, sitemaps)."""
        try:
            return await self.executor.run_sync(self._get_once, url, timeout, operation=f"fetch optional {url}")
        except Exception as e:
            logger.debug(f"Optional fetch of {url} failed: {e}")
            return None

    def _get_once(self, url: str, timeout: Optional[float] = None) -> Optional[RawFetchResult]:
        try:
            return self._get(url, timeout)
        except (TransientCallFailure, FatalCallFailure) as e:
            logger.debug(f"Probe of {url} failed: {e}")
            return None

    def close(self) -> None:
        self.session.close()
