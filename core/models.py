from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


class SourceKind(str, Enum):
    """Where a piece of content came from. Decided once, at ingestion entry."""
    WEB = "web"
    UPLOADED_FILE = "uploaded-file"
    OTHER = "other"


class DiscoveryOrigin(str, Enum):
    SITEMAP = "sitemap"
    CRAWL = "crawl"
    PATTERN_FALLBACK = "pattern-fallback"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class SourceDescriptor:
    """
    Storage-facing description of a content source.

    Attributes:
        kind: web page, uploaded file or anything else
        datasource: stable grouping key (domain label or uploaded-file project name)
        identifier: per-document identifier inside the datasource (page slug or file name)
        file_type: 'web', 'pdf', 'txt', ... used to pick the storage folder
        display_name: human readable name for the source registry
        source_url: canonical URL (origin for web pages, empty for uploads)
        filename: original file name for uploads
    """
    kind: SourceKind
    datasource: str
    identifier: str
    file_type: str
    display_name: str
    source_url: str = ""
    filename: str = ""


@dataclass(frozen=True)
class DiscoveredPage:
    url: str
    depth: int
    origin: DiscoveryOrigin


@dataclass
class DiscoveryResult:
    domain: str
    start_url: str
    pages: List[DiscoveredPage]
    strategy: str
    fallback: bool = False
    fallback_reason: Optional[str] = None

    @property
    def urls(self) -> List[str]:
        return [p.url for p in self.pages]

    def to_dict(self) -> Dict[str, Any]:
        res = {
            "domain": self.domain,
            "totalPages": len(self.pages),
            "discoveredUrls": self.urls,
            "strategy": self.strategy,
        }
        if self.fallback:
            res["fallback"] = True
            res["fallbackReason"] = self.fallback_reason
        return res


@dataclass
class RawFetchResult:
    url: str
    body: str
    content_type: str                   # 'html' or 'text'
    fetched_at: datetime = field(default_factory=utc_now)
    status_code: int = 200


@dataclass
class SanitizedDocument:
    url: str
    title: str
    cleaned_text: str
    content_hash: str
    source: SourceDescriptor
    description: str = ""

    @property
    def document_id(self) -> str:
        return self.content_hash

    @property
    def word_count(self) -> int:
        return len(self.cleaned_text.split())


@dataclass
class Chunk:
    id: str
    document_id: str
    index: int
    total_chunks: int
    primary_text: str
    context_text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def word_count(self) -> int:
        return len(self.primary_text.split())


@dataclass
class SourceRegistryRecord:
    id: str
    type: str
    display_name: str
    source_url: str
    created_at: str
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        res = asdict(self)
        if res["updated_at"] is None:
            del res["updated_at"]
        return res

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceRegistryRecord":
        return cls(
            id=data["id"],
            type=data.get("type", "web"),
            display_name=data.get("display_name", data["id"]),
            source_url=data.get("source_url", ""),
            created_at=data["created_at"],
            updated_at=data.get("updated_at"),
        )


@dataclass
class ProgressEvent:
    phase: str
    message: str
    percentage: int
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        res = {"phase": self.phase, "message": self.message, "percentage": self.percentage}
        res.update(self.details)
        return res


@dataclass
class IngestionJob:
    id: str
    type: str
    params: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    progress: Dict[str, Any] = field(default_factory=lambda: {
        "phase": "starting", "message": "Job created", "percentage": 0
    })
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        res = {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "params": self.params,
            "progress": dict(self.progress),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.result is not None:
            res["result"] = self.result
        if self.error is not None:
            res["error"] = self.error
        return res


@dataclass
class PageResult:
    url: str
    title: str
    document_id: str
    chunk_count: int
    word_count: int
    chunk_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StoredDocument:
    """Keys written for one document by the storage writer."""
    document_id: str
    chunk_keys: List[str]
    text_key: str
    document_key: str
    metadata_key: str
    registry_key: str
    total_word_count: int


@dataclass
class CrawlSummary:
    domain: str
    start_url: str
    discovery: Dict[str, Any]
    pages_discovered: int
    pages_processed: int
    pages: List[PageResult]
    errors: List[Dict[str, str]]
    error_count: int
    timestamp: str = field(default_factory=iso_now)
    reindex: Optional[Dict[str, Any]] = None

    MAX_REPORTED_ERRORS = 5

    @property
    def success_rate(self) -> str:
        if self.pages_discovered == 0:
            return "0.0%"
        return f"{self.pages_processed / self.pages_discovered * 100:.1f}%"

    @property
    def content_stats(self) -> Dict[str, Any]:
        total_chunks = sum(p.chunk_count for p in self.pages)
        total_words = sum(p.word_count for p in self.pages)
        return {
            "totalChunks": total_chunks,
            "totalWords": total_words,
            "averageChunksPerPage": round(total_chunks / len(self.pages), 2) if self.pages else 0,
            "chunksPerPage": {p.url: p.chunk_count for p in self.pages},
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "startUrl": self.start_url,
            "timestamp": self.timestamp,
            "discoveryStats": self.discovery,
            "crawlingStats": {
                "totalPagesDiscovered": self.pages_discovered,
                "totalPagesScraped": self.pages_processed,
                "successRate": self.success_rate,
                "errors": self.error_count,
            },
            "contentStats": self.content_stats,
            "scrapedPages": [p.to_dict() for p in self.pages],
            "errors": self.errors[:self.MAX_REPORTED_ERRORS],
            "knowledgeBaseSync": self.reindex,
            "summary": (
                f"Processed {self.pages_processed} of {self.pages_discovered} pages from {self.domain} "
                f"({self.success_rate} success rate)"
            ),
        }
