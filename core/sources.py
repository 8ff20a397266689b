"""
Classification of content sources.

A SourceDescriptor is built once, when content enters the pipeline, and is then
carried through sanitizing, chunking and storage so later stages never have to
guess whether they are looking at a web page or an uploaded file.
"""
import os
import re
from urllib.parse import urlparse

from slugify import slugify

from core.models import SourceDescriptor, SourceKind
from core.utils import get_domain, get_origin

PAGE_EXTENSION_PATTERN = re.compile(r'\.(html?|php|aspx?|jsp)$', re.IGNORECASE)
FILENAME_SPLIT_PATTERN = re.compile(r'[-_\s]+')

TYPE_FOLDERS = {
    'web': 'websites',
    'pdf': 'pdfs',
    'doc': 'documents',
    'docx': 'documents',
    'rtf': 'documents',
    'txt': 'documents',
    'md': 'documents',
    'xlsx': 'spreadsheets',
    'xls': 'spreadsheets',
    'csv': 'spreadsheets',
}

REGISTRY_TYPES = {
    'web': 'web',
    'pdf': 'pdf',
    'xlsx': 'spreadsheet',
    'xls': 'spreadsheet',
    'csv': 'spreadsheet',
}


def sanitize_identifier(value: str, max_length: int = 50) -> str:
    """Lowercase, hyphen separated identifier safe for object keys."""
    return slugify(value or '', max_length=max_length, word_boundary=False) or 'unknown'


def get_type_folder(file_type: str) -> str:
    return TYPE_FOLDERS.get(file_type, 'documents')


def get_registry_type(file_type: str) -> str:
    return REGISTRY_TYPES.get(file_type, 'doc')


def describe_web_source(url: str) -> SourceDescriptor:
    """
    Describe a scraped web page.

    The datasource is the first label of the host name (``docs.example.com`` -> ``docs``),
    the identifier is the last path segment without a page extension, or ``home-page``
    for the site root.
    """
    domain = get_domain(url)
    datasource = sanitize_identifier(domain.split('.')[0] if domain else 'web')
    segments = [s for s in urlparse(url).path.split('/') if s]
    if segments:
        identifier = sanitize_identifier(PAGE_EXTENSION_PATTERN.sub('', segments[-1]))
    else:
        identifier = 'home-page'
    return SourceDescriptor(
        kind=SourceKind.WEB,
        datasource=datasource,
        identifier=identifier,
        file_type='web',
        display_name=get_origin(url),
        source_url=get_origin(url),
    )


def describe_uploaded_file(filename: str) -> SourceDescriptor:
    """
    Describe an uploaded document.

    Files are grouped by the first token of their name, so ``acme-handbook-2024.pdf``
    and ``acme_pricing.xlsx`` land in the same ``acme`` datasource.
    """
    basename = os.path.basename(filename or '')
    stem, ext = os.path.splitext(basename)
    file_type = ext.lstrip('.').lower() or 'txt'
    if file_type not in TYPE_FOLDERS:
        file_type = 'doc'
    tokens = [t for t in FILENAME_SPLIT_PATTERN.split(stem) if t]
    datasource = sanitize_identifier(tokens[0] if tokens else 'uploads')
    return SourceDescriptor(
        kind=SourceKind.UPLOADED_FILE,
        datasource=datasource,
        identifier=sanitize_identifier(stem),
        file_type=file_type,
        display_name=basename or datasource,
        filename=basename,
    )


def describe_other_source(name: str) -> SourceDescriptor:
    return SourceDescriptor(
        kind=SourceKind.OTHER,
        datasource='general-content',
        identifier=sanitize_identifier(name),
        file_type='document',
        display_name=name or 'general-content',
    )
