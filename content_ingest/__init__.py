"""
content_ingest package

This package provides a proper namespace for the content-ingest tool.
Instead of importing directly from 'ingest', this namespace allows for more
intuitive imports when using content-ingest in other applications:

    from content_ingest import run_ingest, build_services
"""

# Import and re-export the public entry points
from ingest import run_ingest, load_ingest_config
from core.services import build_services

__all__ = ["run_ingest", "load_ingest_config", "build_services"]
