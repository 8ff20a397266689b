import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from omegaconf import DictConfig
from pydantic import BaseModel, ConfigDict, Field

from core.config_schema import check_config
from core.errors import (
    CallFailedAfterRetries, ContentRejected, FatalCallFailure, IngestError, InvalidJobTransition, JobNotFound,
    ReindexConflict, ValidationError,
)
from core.services import Services, build_services
from core.sources import describe_web_source
from core.utils import get_domain, load_config, sanitize_url, setup_logging

logger = logging.getLogger(__name__)

# status code and short error label per error type; first match wins
ERROR_RESPONSES = [
    (ValidationError, 400, 'Validation failed'),
    (JobNotFound, 404, 'Job not found'),
    (ReindexConflict, 409, 'Knowledge base busy'),
    (InvalidJobTransition, 409, 'Job already finished'),
    (ContentRejected, 422, 'Content rejected'),
    (CallFailedAfterRetries, 502, 'Upstream call failed'),
    (FatalCallFailure, 502, 'Upstream call failed'),
]

# =============================================================================
# REQUEST MODELS
# =============================================================================

class CrawlOptionsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    max_pages: Optional[int] = Field(None, alias='maxPages', ge=1, le=500)
    batch_size: Optional[int] = Field(None, alias='batchSize', ge=1, le=20)
    delay: Optional[float] = Field(None, ge=0)
    max_depth: Optional[int] = Field(None, alias='maxDepth', ge=0, le=10)
    follow_external_links: Optional[bool] = Field(None, alias='followExternalLinks')
    respect_robots: Optional[bool] = Field(None, alias='respectRobots')
    sync: Optional[bool] = None
    include_patterns: Optional[List[str]] = Field(None, alias='includePatterns')
    exclude_patterns: Optional[List[str]] = Field(None, alias='excludePatterns')

    def overrides(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ScrapeRequest(BaseModel):
    url: str
    options: Dict[str, Any] = Field(default_factory=dict)


class CrawlRequest(BaseModel):
    url: str
    options: CrawlOptionsModel = Field(default_factory=CrawlOptionsModel)


class UploadRequest(BaseModel):
    filename: Optional[str] = None
    text: str
    title: Optional[str] = None
    sync: bool = False


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: str = Field(..., min_length=1)
    wait_for_availability: bool = Field(True, alias='waitForAvailability')
    wait_for_completion: bool = Field(False, alias='waitForCompletion')

# =============================================================================
# APPLICATION
# =============================================================================

def load_server_config():
    config_file = os.environ.get('CONTENT_INGEST_CONFIG')
    cfg = load_config(config_file) if config_file else load_config()
    return check_config(cfg)


def create_app(services: Optional[Services] = None, cfg: Optional[DictConfig] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Without services, they are built on startup from cfg (or CONTENT_INGEST_CONFIG)
    and closed on shutdown. Services passed in belong to the caller, which is how
    tests inject their own.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(cfg if cfg is not None else load_server_config())
        logger.info("content-ingest server started")
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()
            logger.info("content-ingest server stopped")

    app = FastAPI(title="content-ingest", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(IngestError)
    async def ingest_error_handler(request: Request, exc: IngestError):
        for error_type, status_code, label in ERROR_RESPONSES:
            if isinstance(exc, error_type):
                break
        else:
            status_code, label = 500, 'Internal error'
        body = {'success': False, 'error': label, 'message': str(exc)}
        if isinstance(exc, ContentRejected):
            body['reason'] = exc.reason
        if isinstance(exc, ReindexConflict):
            body['suggestion'] = 'Check the status of the running job with GET /sync/status/{jobId}'
        logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(status_code=status_code, content=body)

    def get_services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    async def health(request: Request):
        svc = get_services(request)
        return {
            'status': 'ok',
            'executors': {
                executor.name: {**executor.status(), 'rate_limited': executor.is_rate_limited()}
                for executor in (svc.fetch_executor, svc.backend_executor)
            },
            'reindexConfigured': svc.reindex.is_configured,
            'jobs': len(svc.jobs.all_jobs()),
        }

    @app.post("/scrape")
    async def scrape(req: ScrapeRequest, request: Request):
        logger.info(f"Received scraping request for: {req.url}")
        result = await get_services(request).orchestrator.scrape_page(req.url, req.options)
        chunks = result['content']['chunks']
        result['chunksExtracted'] = len(chunks)
        return {'success': True, 'message': 'Website scraped successfully', 'data': result}

    @app.post("/discover")
    async def discover(req: CrawlRequest, request: Request):
        result = await get_services(request).orchestrator.discover(req.url, req.options.overrides())
        return {'success': True, 'message': 'Discovery completed', 'data': result.to_dict()}

    @app.post("/enhanced-crawl")
    async def enhanced_crawl(req: CrawlRequest, request: Request):
        logger.info(f"Received crawl request for: {req.url}")
        summary = await get_services(request).orchestrator.crawl(req.url, req.options.overrides())
        return {'success': True, 'message': 'Website crawling completed successfully', 'data': summary.to_dict()}

    @app.post("/crawl-async")
    async def crawl_async(req: CrawlRequest, request: Request):
        job = get_services(request).orchestrator.start_crawl_job(req.url, req.options.overrides())
        return {
            'success': True,
            'message': 'Crawl job started',
            'data': {
                'jobId': job.id,
                'status': job.status.value,
                'progressUrl': f"/crawl/status/{job.id}",
            },
        }

    @app.get("/crawl/status/{job_id}")
    async def crawl_status(job_id: str, request: Request):
        job = get_services(request).jobs.get(job_id)
        data = job.to_dict()
        return {
            'success': True,
            'data': {
                'jobId': job.id,
                'status': data['status'],
                'progress': data['progress'],
                'createdAt': data['createdAt'],
                'updatedAt': data['updatedAt'],
                'result': job.result,
                'error': job.error,
            },
        }

    @app.get("/crawl/jobs")
    async def crawl_jobs(request: Request):
        jobs = get_services(request).jobs.all_jobs()
        return {'success': True, 'data': [j.to_dict() for j in jobs]}

    @app.post("/upload")
    async def upload(req: UploadRequest, request: Request):
        result = await get_services(request).orchestrator.ingest_text(req.text, req.filename, req.title, req.sync)
        return {'success': True, 'message': 'Document ingested successfully', 'data': result}

    @app.get("/stats")
    async def stats(request: Request):
        data = await get_services(request).storage.get_stats()
        return {'success': True, 'data': data}

    @app.get("/domains/{domain}/documents")
    async def domain_documents(domain: str, request: Request):
        storage = get_services(request).storage
        source = describe_web_source(sanitize_url(domain))
        registry = await storage.get_registry(source)
        documents = await storage.list_documents(source.datasource)
        return {
            'success': True,
            'data': {
                'domain': get_domain(source.source_url),
                'datasource': registry.to_dict() if registry else None,
                'documents': documents,
                'totalDocuments': len(documents),
            },
        }

    @app.post("/sync")
    async def sync(req: SyncRequest, request: Request):
        logger.info(f"Manual knowledge base sync requested for: {req.domain} "
                    f"(waitForAvailability: {req.wait_for_availability})")
        result = await get_services(request).reindex.trigger(
            domain=req.domain,
            wait_for_completion=req.wait_for_completion,
            wait_for_availability=req.wait_for_availability,
        )
        data = result.to_dict()
        data['waitedForAvailability'] = req.wait_for_availability
        return {'success': True, 'message': 'Knowledge base sync initiated successfully', 'data': data}

    @app.get("/sync/status/{job_id}")
    async def sync_status(job_id: str, request: Request):
        status = await get_services(request).reindex.status(job_id)
        return {'success': True, 'data': status}

    return app


def serve(host: str = '0.0.0.0', port: int = 8000, cfg: Optional[DictConfig] = None) -> None:
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(cfg=cfg), host=host, port=port)
