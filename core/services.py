import logging
from dataclasses import dataclass
from datetime import timedelta

from omegaconf import DictConfig

from core.chunker import SemanticChunker
from core.discovery import PageDiscoverer
from core.executor import CallExecutor
from core.fetcher import PageFetcher
from core.jobs import JobTracker
from core.orchestrator import CrawlOrchestrator
from core.reindex import ReindexTrigger, create_reindex_backend
from core.sanitizer import TextSanitizer
from core.storage import StorageWriter, create_object_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler or CLI command needs, built once per process."""
    cfg: DictConfig
    fetch_executor: CallExecutor
    backend_executor: CallExecutor
    fetcher: PageFetcher
    discoverer: PageDiscoverer
    sanitizer: TextSanitizer
    chunker: SemanticChunker
    storage: StorageWriter
    reindex: ReindexTrigger
    jobs: JobTracker
    orchestrator: CrawlOrchestrator

    async def close(self) -> None:
        await self.fetch_executor.close()
        await self.backend_executor.close()
        self.fetcher.close()


def build_services(cfg: DictConfig) -> Services:
    """
    Wire the pipeline from configuration.

    Two executors are created: one for page fetches and one shared by storage
    writes and re-index calls.
    """
    fetch_executor = CallExecutor.from_config('fetch', cfg.fetch, cfg.executor)
    backend_executor = CallExecutor.from_config('backend', cfg.executor, cfg.executor)

    fetcher = PageFetcher(cfg, fetch_executor)
    discoverer = PageDiscoverer(cfg, fetcher)
    sanitizer = TextSanitizer(cfg)
    chunker = SemanticChunker.from_config(cfg)
    storage = StorageWriter(create_object_store(cfg), backend_executor, cfg)
    reindex = ReindexTrigger(create_reindex_backend(cfg), backend_executor, cfg)

    jobs_cfg = cfg.get('jobs', {})
    jobs = JobTracker(
        max_jobs=jobs_cfg.get('max_jobs', 100),
        retention=timedelta(hours=jobs_cfg.get('retention_hours', 2.0)),
    )
    orchestrator = CrawlOrchestrator(cfg, discoverer, fetcher, sanitizer, chunker, storage, reindex, jobs)
    logger.info(f"Services ready (storage={cfg.storage.backend}, reindex={cfg.reindex.backend})")

    return Services(
        cfg=cfg,
        fetch_executor=fetch_executor,
        backend_executor=backend_executor,
        fetcher=fetcher,
        discoverer=discoverer,
        sanitizer=sanitizer,
        chunker=chunker,
        storage=storage,
        reindex=reindex,
        jobs=jobs,
        orchestrator=orchestrator,
    )
