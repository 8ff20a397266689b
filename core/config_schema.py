from dataclasses import dataclass, field

from omegaconf import DictConfig, OmegaConf


@dataclass
class StorageConfig:
    """Where documents, chunks and metadata are written."""
    backend: str = 'local'
    """'local' (a directory) or 's3'."""
    output_dir: str = 'content_ingest_output'
    """Directory for the local backend, relative to the working directory unless absolute."""
    bucket: str | None = None
    """Bucket name for the s3 backend."""
    prefix: str = ''
    """Key prefix inside the bucket."""
    endpoint_url: str | None = None
    """Custom S3 endpoint (MinIO, localstack)."""
    region: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    metadata_max_length: int = 1000
    """Maximum length of a sanitized object metadata header value."""


@dataclass
class FetchConfig:
    """HTTP fetching of pages."""
    timeout: int = 30
    """Per-request timeout in seconds."""
    max_concurrent: int = 3
    """Pages fetched at the same time."""
    min_interval: float = 0.5
    """Minimum seconds between two fetch starts."""
    user_agent: str | None = None
    """User-Agent header; a desktop browser string when unset."""
    ssl_verify: str | None = None
    """'false' to disable certificate checks, or a path to a CA bundle."""


@dataclass
class CrawlConfig:
    start_url: str | None = None
    """Site crawled by `run_ingest` when no URL is passed."""
    max_pages: int = 50
    batch_size: int = 3
    delay: float = 2.0
    """Seconds to wait between two batches."""
    max_depth: int = 2


@dataclass
class DiscoveryConfig:
    timeout: int = 1200
    """Seconds before comprehensive discovery gives up and the common-path fallback is used."""
    use_sitemap: bool = True
    use_crawl: bool = True
    keep_query_params: bool = False
    pos_regex: list[str] = field(default_factory=lambda: [])
    """Only URLs matching one of these are kept (empty keeps everything)."""
    neg_regex: list[str] = field(default_factory=lambda: [])
    """URLs matching any of these are dropped."""


@dataclass
class ChunkingConfig:
    primary_size: int = 8000
    context_size: int = 4000
    max_size: int = 12000
    overlap_size: int = 400
    context_paragraphs: int = 3
    sentence_context_chars: int = 2000


@dataclass
class HtmlProcessingConfig:
    ids_to_remove: list[str] = field(default_factory=lambda: [])
    tags_to_remove: list[str] = field(default_factory=lambda: [])
    classes_to_remove: list[str] = field(default_factory=lambda: [])


@dataclass
class QualityConfig:
    """Thresholds of the quality gate."""
    min_length: int = 100
    """Minimum cleaned length of an HTML page."""
    short_min_length: int = 50
    """Minimum cleaned length of plain text, uploads and contact/about style pages."""
    min_readable_ratio: float = 0.2
    min_line_alpha_ratio: float = 0.3
    noise_word_ratio: float = 0.05
    html_processing: HtmlProcessingConfig = field(default_factory=HtmlProcessingConfig)


@dataclass
class ExecutorConfig:
    """Rate limits and retry policy of backend calls (storage writes, re-index)."""
    max_concurrent: int = 2
    min_interval: float = 1.5
    max_retries: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1


@dataclass
class ReindexConfig:
    backend: str = 'none'
    """'none', 'bedrock' or 'http'."""
    knowledge_base_id: str | None = None
    data_source_id: str | None = None
    region: str | None = None
    endpoint: str | None = None
    """Base URL of the http backend."""
    api_key: str | None = None
    timeout: int = 30
    ssl_verify: str | None = None
    availability_interval: int = 30
    availability_timeout: int = 300
    completion_interval: int = 10
    completion_timeout: int = 300


@dataclass
class JobsConfig:
    max_jobs: int = 100
    retention_hours: float = 2.0


@dataclass
class ServerConfig:
    host: str = '0.0.0.0'
    port: int = 8000


@dataclass
class ContentIngestConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    reindex: ReindexConfig = field(default_factory=ReindexConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def check_config(cfg: DictConfig) -> DictConfig:
    """
    Validates the user-provided configuration against the structured schema.

    Args:
        cfg: The configuration loaded from a YAML file.

    Returns:
        The merged and validated configuration object.

    Raises:
        omegaconf.errors.ValidationError: a value has the wrong type
        omegaconf.errors.ConfigKeyError: an unknown key was given
    """
    structured_config = OmegaConf.structured(ContentIngestConfig)
    return OmegaConf.merge(structured_config, cfg)
