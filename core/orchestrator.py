import asyncio
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from omegaconf import DictConfig

from core.chunker import SemanticChunker
from core.discovery import PageDiscoverer
from core.errors import ContentRejected, PipelineJobFailure, ReindexConflict
from core.fetcher import PageFetcher
from core.jobs import JobTracker, ProgressChannel
from core.models import (
    Chunk, CrawlSummary, DiscoveryResult, IngestionJob, PageResult, SanitizedDocument, StoredDocument, iso_now,
)
from core.reindex import ReindexTrigger
from core.sanitizer import TextSanitizer
from core.sources import describe_other_source, describe_uploaded_file, describe_web_source
from core.storage import StorageWriter
from core.utils import get_domain, sanitize_url

logger = logging.getLogger(__name__)


@dataclass
class CrawlOptions:
    max_pages: int = 50
    batch_size: int = 3
    delay: float = 2.0                  # seconds between batches
    max_depth: int = 2
    follow_external_links: bool = False
    respect_robots: bool = True
    sync: bool = True
    include_patterns: Optional[List[str]] = None
    exclude_patterns: Optional[List[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: DictConfig, overrides: Optional[Dict[str, Any]] = None) -> "CrawlOptions":
        """Defaults from the 'crawl' section of cfg, then any non-None overrides."""
        crawl_cfg = cfg.get('crawl', {})
        options = cls(
            max_pages=crawl_cfg.get('max_pages', 50),
            batch_size=crawl_cfg.get('batch_size', 3),
            delay=crawl_cfg.get('delay', 2.0),
            max_depth=crawl_cfg.get('max_depth', 2),
        )
        known = {f.name for f in fields(cls)}
        for key, value in (overrides or {}).items():
            if value is None:
                continue
            if key in known:
                setattr(options, key, value)
            else:
                options.extra[key] = value
        options.max_pages = max(1, int(options.max_pages))
        options.batch_size = max(1, int(options.batch_size))
        options.delay = max(0.0, float(options.delay))
        return options

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'extra'}


class CrawlOrchestrator(object):
    """
    Run the ingestion pipeline: discover pages, fetch them in batches and pass
    every page through the sanitizer, the chunker and the storage writer.

    A failing page is recorded in the crawl summary and never stops the crawl.
    The re-index trigger fires once per crawl, after the last batch, if anything
    was stored.
    """
    def __init__(self, cfg: DictConfig, discoverer: PageDiscoverer, fetcher: PageFetcher,
                 sanitizer: TextSanitizer, chunker: SemanticChunker, storage: StorageWriter,
                 reindex: ReindexTrigger, jobs: JobTracker, sleep=asyncio.sleep):
        self.cfg = cfg
        self.discoverer = discoverer
        self.fetcher = fetcher
        self.sanitizer = sanitizer
        self.chunker = chunker
        self.storage = storage
        self.reindex = reindex
        self.jobs = jobs
        self._sleep = sleep
        self._tasks = set()

    def options(self, overrides: Optional[Dict[str, Any]] = None) -> CrawlOptions:
        return CrawlOptions.from_config(self.cfg, overrides)

    # =========================================================================
    # single documents
    # =========================================================================

    def _prepare(self, document: SanitizedDocument) -> List[Chunk]:
        chunks = self.chunker.chunk(document)
        if not chunks:
            raise ContentRejected("no valid chunks could be created", document.cleaned_text)
        return chunks

    @staticmethod
    def _document_payload(document: SanitizedDocument, chunks: List[Chunk],
                          stored: Optional[StoredDocument]) -> Dict[str, Any]:
        return {
            'url': document.url,
            'title': document.title,
            'timestamp': iso_now(),
            'metadata': {
                'description': document.description,
                'documentId': document.document_id,
                'datasource': document.source.datasource,
                'sourceType': document.source.file_type,
                'wordCount': document.word_count,
                'characterCount': len(document.cleaned_text),
            },
            'content': {
                'chunks': [
                    {
                        'id': c.id,
                        'index': c.index,
                        'content': c.primary_text,
                        'context': c.context_text,
                        'wordCount': c.word_count,
                    }
                    for c in chunks
                ],
                'files': {
                    'chunks': stored.chunk_keys,
                    'text': stored.text_key,
                    'document': stored.document_key,
                    'metadata': stored.metadata_key,
                    'registry': stored.registry_key,
                } if stored is not None else {},
            },
        }

    async def _process_page(self, url: str) -> PageResult:
        raw = await self.fetcher.fetch(url)
        document = self.sanitizer.sanitize(raw, describe_web_source(url))
        chunks = self._prepare(document)
        stored = await self.storage.store_document(document, chunks)
        return PageResult(
            url=url,
            title=document.title,
            document_id=document.document_id,
            chunk_count=len(chunks),
            word_count=stored.total_word_count,
            chunk_keys=stored.chunk_keys,
        )

    async def scrape_page(self, url: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Fetch, clean, chunk and store a single page.

        Raises:
            ValidationError: malformed URL
            ContentRejected: the page is corrupted or too short
            CallFailedAfterRetries, FatalCallFailure: the page could not be fetched
        """
        options = options or {}
        url = sanitize_url(url)
        raw = await self.fetcher.fetch(url)
        document = self.sanitizer.sanitize(raw, describe_web_source(url))
        chunks = self._prepare(document)
        stored = None
        if options.get('store', True):
            stored = await self.storage.store_document(document, chunks)
        return self._document_payload(document, chunks, stored)

    async def ingest_text(self, text: str, filename: Optional[str] = None, title: Optional[str] = None,
                          sync: bool = False) -> Dict[str, Any]:
        """
        Ingest the extracted text of an uploaded file.

        Text without a filename is filed under the general-content datasource.
        """
        if filename:
            source = describe_uploaded_file(filename)
        else:
            source = describe_other_source(title or 'untitled')
        document = self.sanitizer.sanitize_text(text, source, title)
        chunks = self._prepare(document)
        stored = await self.storage.store_document(document, chunks)
        payload = self._document_payload(document, chunks, stored)
        if sync:
            payload['knowledgeBaseSync'] = await self._sync(source.datasource)
        return payload

    # =========================================================================
    # crawling
    # =========================================================================

    async def discover(self, url: str, options: Optional[Dict[str, Any]] = None) -> DiscoveryResult:
        opts = options if isinstance(options, CrawlOptions) else self.options(options)
        return await self.discoverer.discover(
            url,
            max_pages=opts.max_pages,
            max_depth=opts.max_depth,
            follow_external_links=opts.follow_external_links,
            include_patterns=opts.include_patterns,
            exclude_patterns=opts.exclude_patterns,
            respect_robots=opts.respect_robots,
        )

    async def _sync(self, domain: str) -> Dict[str, Any]:
        try:
            result = await self.reindex.trigger(domain=domain)
            return result.to_dict()
        except ReindexConflict as e:
            logger.warning(f"Knowledge base sync for {domain} skipped: {e}")
            return {'status': 'conflict', 'message': str(e)}
        except Exception as e:
            logger.error(f"Knowledge base sync for {domain} failed: {e}")
            return {'status': 'failed', 'message': str(e)}

    async def _store_summary(self, summary: CrawlSummary) -> None:
        key = f"metadata/{summary.domain}/{summary.timestamp[:10]}/crawl-summary.json"
        try:
            await self.storage.store_json(key, summary.to_dict())
            logger.info(f"Saved crawl summary to {key}")
        except Exception as e:
            logger.warning(f"Failed to save crawl summary to {key}: {e}")

    async def crawl(self, url: str, options: Optional[Dict[str, Any]] = None,
                    progress: Optional[ProgressChannel] = None) -> CrawlSummary:
        """
        Crawl a site: discover pages, process them in batches and sync the knowledge base.

        Args:
            url (str): start URL
            options (dict): overrides for CrawlOptions
            progress (ProgressChannel): receives discovery, scraping, processing, sync and completed events

        Returns:
            CrawlSummary: per-page results and errors

        Raises:
            ValidationError: malformed start URL or include/exclude pattern
        """
        opts = options if isinstance(options, CrawlOptions) else self.options(options)
        progress = progress or ProgressChannel()

        progress.emit('discovery', f"Discovering pages on {url}", 10)
        discovery = await self.discover(url, opts)
        urls = discovery.urls[:opts.max_pages]
        domain = discovery.domain or get_domain(url)
        logger.info(f"Crawling {len(urls)} pages on {domain} (strategy {discovery.strategy})")

        progress.emit('scraping', f"Found {len(urls)} pages, starting to scrape", 30, totalPages=len(urls))
        batches = [urls[i:i + opts.batch_size] for i in range(0, len(urls), opts.batch_size)]
        pages: List[PageResult] = []
        errors: List[Dict[str, str]] = []

        for b, batch in enumerate(batches, start=1):
            progress.emit('scraping', f"Processing batch {b}/{len(batches)}",
                          30 + int((b - 1) / len(batches) * 50),
                          batch=b, totalBatches=len(batches), pagesProcessed=len(pages))
            results = await asyncio.gather(*(self._process_page(u) for u in batch), return_exceptions=True)
            for page_url, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.warning(f"Failed to process {page_url}: {result}")
                    errors.append({'url': page_url, 'error': str(result), 'type': type(result).__name__})
                else:
                    pages.append(result)
            if b < len(batches) and opts.delay > 0:
                await self._sleep(opts.delay)

        progress.emit('processing', f"Processed {len(pages)} of {len(urls)} pages", 85,
                      pagesProcessed=len(pages), errorCount=len(errors))

        reindex = None
        if opts.sync and pages:
            progress.emit('sync', "Syncing knowledge base", 90)
            reindex = await self._sync(domain)

        summary = CrawlSummary(
            domain=domain,
            start_url=discovery.start_url,
            discovery=discovery.to_dict(),
            pages_discovered=len(urls),
            pages_processed=len(pages),
            pages=pages,
            errors=errors,
            error_count=len(errors),
            reindex=reindex,
        )
        await self._store_summary(summary)
        progress.emit('completed', summary.to_dict()['summary'], 100)
        logger.info(f"Crawl of {domain} finished: {len(pages)} pages stored, {len(errors)} errors")
        return summary

    # =========================================================================
    # background jobs
    # =========================================================================

    async def _run_job(self, job_id: str, url: str, options: CrawlOptions, channel: ProgressChannel) -> None:
        try:
            summary = await self.crawl(url, options, channel)
        except Exception as e:
            failure = PipelineJobFailure(job_id, e)
            logger.error(str(failure))
            self.jobs.fail(job_id, str(e) or type(e).__name__)
        else:
            self.jobs.complete(job_id, summary.to_dict())

    def start_crawl_job(self, url: str, options: Optional[Dict[str, Any]] = None) -> IngestionJob:
        """
        Create a crawl job and run it on a background task. Must be called from a running event loop.

        Returns:
            IngestionJob: the job, still pending

        Raises:
            ValidationError: malformed start URL or include/exclude pattern; no job is created
        """
        url = sanitize_url(url)
        opts = self.options(options)
        self.discoverer.compile_patterns(opts.include_patterns, opts.exclude_patterns)
        job = self.jobs.create('crawl', {'url': url, **opts.to_dict()})
        channel = ProgressChannel()
        self.jobs.subscribe(job.id, channel)
        task = asyncio.get_running_loop().create_task(self._run_job(job.id, url, opts, channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def wait_for_jobs(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
