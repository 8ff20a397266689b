# Standard library imports
import hashlib
import logging
import os
import re
import shutil
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, ParseResult

# Third-party imports
import requests
from bs4 import BeautifulSoup
from omegaconf import DictConfig, OmegaConf
from requests.adapters import HTTPAdapter
from requests.models import Response, PreparedRequest
from urllib3.util.retry import Retry

from core.errors import ValidationError

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

# File extensions
IMG_EXTENSIONS = [".gif", ".jpeg", ".jpg", ".png", ".svg", ".bmp", ".eps", ".ico", ".webp", ".tiff", ".tif"]
AUDIO_EXTENSIONS = [".mp3", ".wav", ".flac", ".aac", ".ogg", ".wma", ".m4a", ".opus"]
VIDEO_EXTENSIONS = [".mp4", ".avi", ".mov", ".webm", ".mkv", ".wmv", ".flv", ".mpeg", ".mpg", ".m4v", ".3gp", ".f4v"]
ARCHIVE_EXTENSIONS = [".zip", ".gz", ".tar", ".bz2", ".7z", ".rar"]
STYLE_EXTENSIONS = [".css", ".js", ".json", ".xml", ".woff", ".woff2", ".ttf"]
# URLs ending with these are never fetched as pages
NON_PAGE_EXTENSIONS = ARCHIVE_EXTENSIONS + IMG_EXTENSIONS + AUDIO_EXTENSIONS + VIDEO_EXTENSIONS + STYLE_EXTENSIONS

# HTTP configurations
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,text/plain;q=0.8,*/*;q=0.7",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

# Retry configurations
DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_STATUS_CODES = [429, 500, 502, 503, 504]
DEFAULT_RETRY_BACKOFF_FACTOR = 1
DEFAULT_RETRY_METHODS = ["HEAD", "GET", "OPTIONS", "POST"]

# Regex patterns (compiled at module level for performance)
LOGGER_ENV_PATTERN = re.compile(r'^LOGGER_([A-Z0-9_]+)_LEVEL$')
SITEMAP_PATTERN = re.compile(r'^sitemap:', re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r'\s+')

# =============================================================================
# LOGGING UTILITIES
# =============================================================================

def setup_logging(level='INFO'):
    log_level_str = os.getenv("LOGGING_LEVEL", level).upper()

    # Map string to logging level, fallback to INFO if invalid
    log_level = getattr(logging, log_level_str, logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Only add handler if none exists to prevent duplicates
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handler.setFormatter(formatter)
        root.addHandler(handler)

    logger.debug("Setting logging levels")
    # Configure specific loggers based on environment variables
    for env_key, log_level_str in os.environ.items():
        match = LOGGER_ENV_PATTERN.match(env_key)
        if match:
            logger_name = match.group(1).lower().replace('_', '.')
            level_name = log_level_str.upper()
            level = getattr(logging, level_name, None)
            if level:
                logger.debug(f"Changing logging level for {logger_name} to {level_name}:{level}.")
                logging.getLogger(logger_name).setLevel(level)
            else:
                logger.warning(f"Could not change logger {logger_name} to unknown level {level_name}.")

# =============================================================================
# HASHING UTILITIES
# =============================================================================

def sha256_hex(text: str) -> str:
    """Deterministic SHA-256 hex digest of a string."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()

def short_hash(text: str, length: int = 8) -> str:
    return sha256_hex(text)[:length]


def html_to_text(html: str, html_processing: dict = {}) -> str:
    """
    Convert HTML to text, skipping non-content elements.

    Block-level elements are separated by blank lines so that paragraph
    structure survives the conversion.
    """
    soup = BeautifulSoup(html, 'html5lib')

    # Remove unwanted HTML elements
    for element in soup.find_all(['script', 'style', 'noscript', 'form', 'nav', 'header', 'footer', 'aside']):
        element.decompose()

    # remove any HTML items with the specified IDs
    ids_to_remove = html_processing.get('ids_to_remove', [])
    for id in ids_to_remove:
        for element in soup.find_all(id=id):
            element.decompose()

    # remove any HTML tags in the list
    tags_to_remove = html_processing.get('tags_to_remove', [])
    for tag in tags_to_remove:
        for element in soup.find_all(tag):
            element.decompose()

    # remove any elements with these classes
    classes_to_remove = html_processing.get('classes_to_remove', [])
    for class_name in classes_to_remove:
        for element in soup.find_all(class_=class_name):
            element.decompose()

    root = soup.body or soup
    return root.get_text('\n\n', strip=True)

# =============================================================================
# HTTP UTILITIES
# =============================================================================

class LoggingAdapter(HTTPAdapter):
    """Debug-logs one line per request: method, url, status, size and elapsed time."""
    def send(self, request: PreparedRequest, **kwargs) -> Response:
        response = super().send(request, **kwargs)
        if logger.isEnabledFor(logging.DEBUG):
            content_type = response.headers.get('Content-Type', '-')
            logger.debug(
                f"{request.method} {request.url} -> {response.status_code} "
                f"({content_type}, {len(response.content)} bytes, {response.elapsed.total_seconds():.2f}s)"
            )
        return response

def create_session_with_retries(retries: int = DEFAULT_RETRY_ATTEMPTS) -> requests.Session:
    """
    Create a requests session with retries.

    Sessions whose calls go through the CallExecutor should pass retries=0,
    the executor owns backoff for those.
    """
    session = requests.Session()
    retry_strategy = Retry(
        total=retries,
        status_forcelist=DEFAULT_RETRY_STATUS_CODES,
        backoff_factor=DEFAULT_RETRY_BACKOFF_FACTOR,
        raise_on_status=False,
        respect_retry_after_header=True,
        allowed_methods=DEFAULT_RETRY_METHODS,
    )
    logging_adapter = LoggingAdapter(max_retries=retry_strategy)
    session.mount('http://', logging_adapter)
    session.mount('https://', logging_adapter)
    return session

def configure_session_for_ssl(session: requests.Session, config: DictConfig) -> None:
    """
    Configure SSL settings for a requests session.

    Parameters:
    -----------
    session : requests.Session
        The requests session to configure with SSL settings.

    config : DictConfig
        A dictionary-like object with an optional "ssl_verify" entry:
          - If `False`, SSL verification is disabled (not recommended for production).
          - If a string, it is treated as the path to a custom CA certificate file or directory.
          - If `True` or not provided, default SSL verification is used.
    """
    ssl_verify = config.get("ssl_verify", None)

    if ssl_verify is False or (isinstance(ssl_verify, str) and ssl_verify.lower() in ("false", "0")):
        logger.warning("Disabling ssl verification for session.")
        session.verify = False
        return

    if ssl_verify is None or ssl_verify is True or (isinstance(ssl_verify, str) and ssl_verify.lower() in ("true", "1")):
        logger.debug("SSL verify using default system certificates")
        return

    if isinstance(ssl_verify, str):
        ca_path = os.path.expanduser(ssl_verify)
        if os.path.exists(ca_path):
            logger.info(f"Using certificate path: {ca_path}")
            session.verify = ca_path
            return

        raise FileNotFoundError(f"Certificate path '{ssl_verify}' could not be found or accessed.")

def get_headers(cfg):
    """
    Get HTTP headers from configuration.

    Args:
        cfg: Configuration object

    Returns:
        Dict[str, str]: HTTP headers dictionary
    """
    user_agent = cfg.fetch.get("user_agent", None) or DEFAULT_USER_AGENT
    headers = DEFAULT_HEADERS.copy()
    headers["User-Agent"] = user_agent
    return headers

# =============================================================================
# URL UTILITIES
# =============================================================================

def is_valid_url(url: str) -> bool:
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False

def sanitize_url(url: str) -> str:
    """
    Clean up a user-supplied URL and make sure it is fetchable.

    Strips whitespace and stray leading '@' or '#' characters (common when URLs are
    pasted from chat tools) and defaults to https when no scheme is given.

    Raises:
        ValidationError: if the result is not a valid http(s) URL
    """
    if not url or not isinstance(url, str):
        raise ValidationError("URL is required")
    cleaned = url.strip().lstrip('@#').strip()
    if not cleaned.startswith(('http://', 'https://')):
        cleaned = f"https://{cleaned}"
    if not is_valid_url(cleaned):
        raise ValidationError(f"Invalid URL format: {url}")
    host = urlparse(cleaned).netloc.split(':')[0]
    if '.' not in host and host != 'localhost':
        raise ValidationError(f"Invalid URL format: {url}")
    return cleaned

def normalize_url(url: str, keep_query_params: bool = False) -> str:
    """
    Normalize a URL by removing query parameters and standardizing format.

    Args:
        url (str): URL to normalize
        keep_query_params (bool): Whether to preserve query parameters

    Returns:
        str: Normalized URL
    """
    # Prepend with 'http://' if URL has no scheme
    if '://' not in url:
        url = 'http://' + url
    p = urlparse(url)
    netloc = p.netloc.lower()
    netloc = netloc[4:] if netloc.startswith('www.') else netloc
    path = p.path.rstrip('/') if p.path and p.path != '/' else '/'
    query = p.query if keep_query_params else ''
    return ParseResult(p.scheme.lower(), netloc, path or '/', '', query, '').geturl()

def get_domain(url: str) -> str:
    """Host name of a URL without a leading 'www.'."""
    netloc = urlparse(url).netloc.lower().split(':')[0]
    return netloc[4:] if netloc.startswith('www.') else netloc

def get_origin(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"

def get_file_extension(url):
    """
    Extract the file extension from a URL.

    Args:
        url (str): URL to extract extension from

    Returns:
        str: File extension in lowercase
    """
    path = urlparse(url).path
    return Path(path).suffix.lower()

# =============================================================================
# PATTERN MATCHING UTILITIES
# =============================================================================

def url_matches_patterns(url, pos_patterns, neg_patterns):
    """
    Check if URL matches positive patterns and doesn't match negative patterns.

    Args:
        url (str): URL to check
        pos_patterns (List[Pattern]): Positive regex patterns
        neg_patterns (List[Pattern]): Negative regex patterns

    Returns:
        bool: True if URL matches criteria
    """
    pos_match = len(pos_patterns)==0 or any([r.match(url) for r in pos_patterns])
    neg_match = len(neg_patterns)==0 or not any([r.match(url) for r in neg_patterns])
    return pos_match and neg_match

# =============================================================================
# SYSTEM UTILITIES
# =============================================================================

def get_docker_or_local_path(docker_path: str, output_dir: str = "content_ingest_output", should_delete_existing: bool = False) -> str:
    """
    Get appropriate path for storing files.

    Args:
        docker_path: Path used when running inside the container image
        output_dir: Output directory name for local path (can include subdirectories).
        should_delete_existing: Whether to delete existing directory if it exists

    Returns:
        str: The resolved path (Docker or local)
    """
    if os.path.exists(docker_path):
        logger.info(f"Using Docker path: {docker_path}")
        return docker_path

    local_path = output_dir if os.path.isabs(output_dir) else os.path.join(os.getcwd(), output_dir)

    if should_delete_existing and os.path.exists(local_path):
        shutil.rmtree(local_path)

    os.makedirs(local_path, exist_ok=True)

    logger.info(f"Using local path: {local_path}")
    return local_path


config_defaults = {
    'storage': {
        'backend': 'local',
        'output_dir': 'content_ingest_output',
    },
    'fetch': {
        'timeout': 30,
        'max_concurrent': 3,
        'min_interval': 0.5,
    },
    'crawl': {
        'max_pages': 50,
        'batch_size': 3,
        'delay': 2.0,
        'max_depth': 2,
    },
    'discovery': {
        'timeout': 1200,
    },
    'executor': {
        'max_concurrent': 2,
        'min_interval': 1.5,
        'max_retries': 5,
        'base_delay': 2.0,
        'max_delay': 30.0,
        'jitter': 0.1,
    },
    'reindex': {
        'backend': 'none',
    },
    'jobs': {
        'max_jobs': 100,
        'retention_hours': 2.0,
    },
    'server': {
        'host': '0.0.0.0',
        'port': 8000,
    },
}

def load_config(*config_files: str) -> DictConfig:
    """
    Loads and merges multiple configuration files into a single OmegaConf DictConfig object.

    The function starts by creating a base configuration from `config_defaults`.
    Later files in the sequence override values from earlier files or the defaults.

    Args:
        *config_files: paths to YAML configuration files

    Returns:
        DictConfig: the merged configuration
    """
    configs = [
        OmegaConf.create(config_defaults)
    ]
    for config_file in config_files:
        logger.info(f'load_config() - Loading config {config_file}')
        config = OmegaConf.load(config_file)
        configs.append(config)

    return OmegaConf.merge(*configs)

def update_omega_conf(cfg: DictConfig, source: str, key: str, new_value) -> None:
    """
    Update a config key, logging the source of the change for troubleshooting.
    """
    old_value = OmegaConf.select(cfg, key, default=None)
    logger.debug(f"Updating Config: source='{source}' key='{key}' old_value='{old_value}' new_value='{new_value}'")
    OmegaConf.update(cfg, key, new_value, force_add=True)

def collapse_whitespace(text: Optional[str]) -> str:
    return WHITESPACE_PATTERN.sub(' ', text or '').strip()
