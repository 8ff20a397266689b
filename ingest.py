import asyncio
import json
import logging
import os
import re
import sys
from typing import Any, Dict, List, Optional

import toml     # type: ignore
import typer
from omegaconf import OmegaConf, DictConfig

from core.config_schema import ContentIngestConfig, check_config
from core.errors import IngestError
from core.services import Services, build_services
from core.utils import load_config, setup_logging, update_omega_conf

app = typer.Typer()
setup_logging()

logger = logging.getLogger()

DOCKER_SECRETS_PATH = '/home/ingest/env/secrets.toml'

# environment variable -> config key
AWS_KEYS = {
    'AWS_ACCESS_KEY_ID': ['storage.aws_access_key_id'],
    'AWS_SECRET_ACCESS_KEY': ['storage.aws_secret_access_key'],
    'AWS_REGION': ['storage.region', 'reindex.region'],
    'AWS_ENDPOINT_URL': ['storage.endpoint_url'],
}
ENV_PATTERNS = {
    'REINDEX_(.+)': 'reindex',
    'INGEST_(STORAGE|FETCH|CRAWL|DISCOVERY|CHUNKING|QUALITY|EXECUTOR|JOBS|SERVER)_(.+)': None,
}


def _schema_has(key: str) -> bool:
    schema = OmegaConf.structured(ContentIngestConfig)
    return OmegaConf.select(schema, key, default='__missing__') != '__missing__'


def update_environment(cfg: DictConfig, source: str, env_dict) -> None:
    """Loop through the items and update the underlying OmegaConf. All changes are logged with the source."""
    for k, v in env_dict.items():
        reason = f"{source}:{k}"
        key = k.upper()
        if key in AWS_KEYS:
            for target in AWS_KEYS[key]:
                update_omega_conf(cfg, reason, target, v)
            continue

        for pattern, section in ENV_PATTERNS.items():
            match = re.match(pattern, key)
            if not match:
                continue
            if section is None:
                target = f"{match.group(1).lower()}.{match.group(2).lower()}"
            else:
                target = f"{section}.{match.group(1).lower()}"
            if _schema_has(target):
                update_omega_conf(cfg, reason, target, v)
            else:
                logger.warning(f"Ignoring {reason}: '{target}' is not a known config key")
            break


def find_secrets_path(secrets_path: Optional[str]) -> Optional[str]:
    if secrets_path is not None:
        if not os.path.exists(secrets_path):
            logger.error(f"Provided secrets path '{secrets_path}' does not exist")
            raise typer.Exit(1)
        logger.info(f"Using provided secrets path: {secrets_path}")
        return secrets_path

    env_secrets_path = os.environ.get('CONTENT_INGEST_SECRETS_PATH')
    if env_secrets_path and os.path.exists(env_secrets_path):
        logger.info(f"Using secrets from environment variable: {env_secrets_path}")
        return env_secrets_path
    if os.path.exists(DOCKER_SECRETS_PATH):
        logger.info(f"Using Docker secrets path: {DOCKER_SECRETS_PATH}")
        return DOCKER_SECRETS_PATH
    if os.path.exists('secrets.toml'):
        logger.info("Using local secrets path: secrets.toml")
        return 'secrets.toml'
    return None


def load_ingest_config(config_file: Optional[str] = None, profile: Optional[str] = None,
                       secrets_path: Optional[str] = None) -> DictConfig:
    """
    Build the effective configuration: defaults, the YAML config file, the
    secrets.toml profile and finally INGEST_*, AWS_* and REINDEX_* environment variables.
    """
    try:
        cfg = load_config(config_file) if config_file else load_config()
    except Exception as e:
        logger.error(f"Error loading config file ({config_file}): {e}")
        raise typer.Exit(1)

    # If ssl_verify is not set, check for ca.pem
    if not cfg.fetch.get("ssl_verify", None) and os.path.exists("ca.pem"):
        logger.info("Found ca.pem in current directory, using it for SSL verification")
        update_omega_conf(cfg, 'ca.pem', 'fetch.ssl_verify', os.path.abspath("ca.pem"))

    if profile:
        path = find_secrets_path(secrets_path)
        if path is None:
            logger.error('secrets.toml not found in repository root')
            raise typer.Exit(1)
        logger.info(f"Loading {path}")
        with open(path, "r") as f:
            env_dict = toml.load(f)
        if profile not in env_dict:
            logger.error(f'Profile "{profile}" not found in secrets.toml')
            raise typer.Exit(1)
        logger.info(f'Using profile "{profile}" from secrets.toml')
        update_environment(cfg, f"{path}:general", env_dict.get('general', {}))
        update_environment(cfg, path, env_dict[profile])

    update_environment(cfg, 'os.environ', dict(os.environ))
    cfg = check_config(cfg)
    logger.info("Configuration loaded...")
    return cfg


async def _with_services(cfg: DictConfig, fn):
    services = build_services(cfg)
    try:
        return await fn(services)
    finally:
        await services.close()


def _run(cfg: DictConfig, fn) -> Any:
    try:
        return asyncio.run(_with_services(cfg, fn))
    except IngestError as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(1)


def _echo(data: Dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def run_ingest(config_file: Optional[str] = None, profile: Optional[str] = None,
               secrets_path: Optional[str] = None, url: Optional[str] = None,
               overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Crawl a site and ingest it; callable from both Docker and the CLI.

    The start URL is taken from url, or from crawl.start_url in the config.

    Returns:
        dict: the crawl summary
    """
    cfg = load_ingest_config(config_file, profile, secrets_path)
    url = url or cfg.crawl.get('start_url')
    if not url:
        logger.error("No start URL given (pass --url or set crawl.start_url)")
        raise typer.Exit(1)

    async def crawl(services: Services):
        summary = await services.orchestrator.crawl(url, overrides)
        return summary.to_dict()

    logger.info(f"Starting crawl of {url}...")
    result = _run(cfg, crawl)
    logger.info(f"Finished crawl of {url}: {result['summary']}")
    return result


ConfigOption = typer.Option(None, help="Path to the configuration file")
ProfileOption = typer.Option(None, help="Profile name in secrets.toml")
SecretsOption = typer.Option(None, help="Path to secrets.toml file (defaults to secrets.toml in current directory)")


@app.command()
def crawl(
    url: Optional[str] = typer.Option(None, help="Start URL (defaults to crawl.start_url)"),
    max_pages: Optional[int] = typer.Option(None, help="Maximum number of pages to ingest"),
    batch_size: Optional[int] = typer.Option(None, help="Pages processed concurrently per batch"),
    delay: Optional[float] = typer.Option(None, help="Seconds to wait between batches"),
    max_depth: Optional[int] = typer.Option(None, help="Link depth followed during discovery"),
    follow_external_links: bool = typer.Option(False, help="Also ingest pages on other domains"),
    sync: bool = typer.Option(True, help="Trigger a knowledge base re-index when done"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """Discover, fetch, chunk and store all pages of a website."""
    overrides = {
        'max_pages': max_pages, 'batch_size': batch_size, 'delay': delay, 'max_depth': max_depth,
        'follow_external_links': follow_external_links, 'sync': sync,
    }
    _echo(run_ingest(config_file, profile, secrets_path, url, overrides))


@app.command()
def scrape(
    url: str = typer.Argument(..., help="Page to scrape"),
    store: bool = typer.Option(True, help="Write the page to storage"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """Scrape a single page."""
    cfg = load_ingest_config(config_file, profile, secrets_path)
    _echo(_run(cfg, lambda s: s.orchestrator.scrape_page(url, {'store': store})))


@app.command()
def discover(
    url: str = typer.Argument(..., help="Start URL"),
    max_pages: Optional[int] = typer.Option(None, help="Maximum number of pages to return"),
    max_depth: Optional[int] = typer.Option(None, help="Link depth followed"),
    include: Optional[List[str]] = typer.Option(None, help="Regex a URL must match (repeatable)"),
    exclude: Optional[List[str]] = typer.Option(None, help="Regex a URL must not match (repeatable)"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """List the pages that a crawl of URL would ingest."""
    cfg = load_ingest_config(config_file, profile, secrets_path)
    options = {
        'max_pages': max_pages, 'max_depth': max_depth,
        'include_patterns': include or None, 'exclude_patterns': exclude or None,
    }

    async def run(services: Services):
        result = await services.orchestrator.discover(url, options)
        return result.to_dict()

    _echo(_run(cfg, run))


@app.command()
def upload(
    path: str = typer.Argument(..., help="Plain text file with the extracted document text"),
    filename: Optional[str] = typer.Option(None, help="Original file name (defaults to the file's name)"),
    title: Optional[str] = typer.Option(None, help="Document title"),
    sync: bool = typer.Option(False, help="Trigger a knowledge base re-index when done"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """Ingest the extracted text of an uploaded document."""
    if not os.path.exists(path):
        logger.error(f"File '{path}' does not exist")
        raise typer.Exit(1)
    with open(path, 'r', encoding='utf-8') as f:
        text = f.read()
    cfg = load_ingest_config(config_file, profile, secrets_path)
    name = filename or os.path.basename(path)
    _echo(_run(cfg, lambda s: s.orchestrator.ingest_text(text, name, title, sync)))


@app.command()
def sync(
    domain: str = typer.Argument(..., help="Domain the re-index is for"),
    wait_for_availability: bool = typer.Option(True, help="Wait for a running job to finish first"),
    wait_for_completion: bool = typer.Option(False, help="Wait until the re-index job finishes"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """Trigger a knowledge base re-index."""
    cfg = load_ingest_config(config_file, profile, secrets_path)

    async def run(services: Services):
        result = await services.reindex.trigger(domain, wait_for_completion, wait_for_availability)
        return result.to_dict()

    _echo(_run(cfg, run))


@app.command("sync-status")
def sync_status(
    job_id: str = typer.Argument(..., help="Re-index job id"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """Show the status of a re-index job."""
    cfg = load_ingest_config(config_file, profile, secrets_path)
    _echo(_run(cfg, lambda s: s.reindex.status(job_id)))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Interface to bind (defaults to server.host)"),
    port: Optional[int] = typer.Option(None, help="Port to listen on (defaults to server.port)"),
    config_file: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    secrets_path: Optional[str] = SecretsOption,
) -> None:
    """Run the HTTP API."""
    from server import serve as serve_app

    cfg = load_ingest_config(config_file, profile, secrets_path)
    serve_app(host or cfg.server.host, port or cfg.server.port, cfg)


if __name__ == '__main__':
    # Docker style: python ingest.py <config_file> <secrets-profile>
    has_named_args = any(arg.startswith('--') for arg in sys.argv[1:])
    if len(sys.argv) == 3 and not has_named_args and sys.argv[1].endswith((".yaml", ".yml")):
        config_file, profile = sys.argv[1], sys.argv[2]
        logger.info(f"Running with config={config_file}, profile={profile}")
        run_ingest(config_file, profile)
    else:
        app()
