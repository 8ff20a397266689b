import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup
from omegaconf import DictConfig, OmegaConf

from core.errors import ContentRejected
from core.models import RawFetchResult, SanitizedDocument, SourceDescriptor
from core.utils import html_to_text, sha256_hex, collapse_whitespace

logger = logging.getLogger(__name__)

# =============================================================================
# CONTENT TYPE DETECTION
# =============================================================================

DOCTYPE_PATTERN = re.compile(r'<!DOCTYPE\s+html', re.IGNORECASE)
HTML_TAG_PATTERN = re.compile(r'<html[\s>]', re.IGNORECASE)
STRUCTURAL_TAG_PATTERNS = [
    re.compile(rf'<{tag}[\s>/]', re.IGNORECASE)
    for tag in ('head', 'body', 'div', 'p', 'span', 'script', 'style', 'meta', 'title')
]
ANY_TAG_PATTERN = re.compile(r'</?[a-zA-Z][a-zA-Z0-9]*(?:\s[^<>]*)?/?>')


def detect_content_type(body: str) -> str:
    """
    Classify a response body as 'html' or 'text' using tag density.

    A body is HTML when it has a doctype or an <html> tag, matches at least two
    structural tag patterns, or contains more than three tags overall.
    """
    if not body:
        return 'text'
    sample = body[:50000]
    if DOCTYPE_PATTERN.search(sample) or HTML_TAG_PATTERN.search(sample):
        return 'html'
    matches = sum(1 for p in STRUCTURAL_TAG_PATTERNS if p.search(sample))
    if matches >= 2:
        return 'html'
    if len(ANY_TAG_PATTERN.findall(sample)) > 3:
        return 'html'
    return 'text'

# =============================================================================
# CORRUPTION DETECTION
# =============================================================================

CORRUPTED_PATTERNS = [
    ('base64 content marker', re.compile(r'#content\s*!\s*base64,', re.IGNORECASE)),
    ('base64 data URI', re.compile(r'data:[\w/+.-]+;base64,', re.IGNORECASE)),
    ('base64 payload', re.compile(r'^[A-Za-z0-9+/=]{100,}$', re.MULTILINE)),
    ('base64 payload with padding runs', re.compile(r'^[+/=\w]{30,}\+{3,}[+/=\w]*$', re.MULTILINE)),
    ('encoded SVG definitions', re.compile(r'^\s*\+?CiAgPGRlZnM', re.MULTILINE)),
    ('base64 payload with leading padding', re.compile(r'^\+{3,}[A-Za-z0-9+/=]{20,}', re.MULTILINE)),
    ('encoded SVG markup', re.compile(r'PGRlZnM.*PHN0eWxl.*PHNjcmlwdA', re.DOTALL)),
    ('unbroken alphanumeric run', re.compile(r'[A-Za-z0-9+/]{200,}')),
]
READABLE_CHAR_PATTERN = re.compile(r'''[a-zA-Z\s.,!?;:()'"\-\[\]#]''')

# Mojibake produced by decoding UTF-8 punctuation as cp1252
ENCODING_FIXES = [
    ('â€™', "'"),
    ('â€˜', "'"),
    ('â€œ', '"'),
    ('â€\x9d', '"'),
    ('â€"', '-'),
    ('â€“', '-'),
    ('â€”', '-'),
    ('â€¦', '...'),
    ('â€¢', '-'),
    ('Ã©', 'é'),
    ('Ã¨', 'è'),
    ('Ã¼', 'ü'),
    ('Ã¶', 'ö'),
    ('Ã¤', 'ä'),
    ('Â ', ' '),
    ('Â', ''),
    ('\u00a0', ' '),
    ('\u200b', ''),
]

# =============================================================================
# MAIN CONTENT EXTRACTION
# =============================================================================

REMOVE_SELECTORS = [
    'script', 'style', 'noscript', 'link[rel="stylesheet"]', 'template', 'iframe', 'svg',
    'nav', 'header', 'footer', 'aside',
    '.sidebar', '.menu', '.navigation', '.nav', '.breadcrumb', '.breadcrumbs',
    '.ads', '.advertisement', '.ad-container',
    '[class*="cookie"]', '[id*="cookie"]', '[class*="banner"]', '[class*="popup"]', '[class*="modal"]',
    '[class*="osano"]', '[id*="osano"]',
    '.visually-hidden', '.sr-only', '.hidden', '[aria-hidden="true"]',
    'form', 'input', 'select', 'textarea', 'button', 'label',
]
CONTENT_SELECTORS = [
    'main', 'article', '.content', '#content', '.main-content',
    '.post-content', '.entry-content', '.article-content', '.page-content',
]
BLOCK_TAGS = [
    'p', 'div', 'section', 'article', 'main', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'li', 'ul', 'ol', 'dl', 'dt', 'dd', 'table', 'tr', 'th', 'td', 'blockquote', 'pre',
    'figcaption', 'address', 'br', 'hr',
]
PARAGRAPH_MARK = '\ue000'

CSS_JS_PATTERNS = [
    re.compile(p) for p in (
        r'font-family\s*:', r'background-color\s*:', r'border-radius\s*:', r'osano-cm-',
        r'\btransition-\w+', r'-webkit-', r'---EMBEDDED SCRIPT DATA---', r'\bvar\s+\w+\s*=',
        r'\bfunction\s+\w*\s*\(', r'\bdocument\.(?:getElementById|querySelector|write|cookie|addEventListener|createElement)',
        r'\bwindow\.(?:location|addEventListener|dataLayer|onload)', r'\$\(document\)',
        r'googleGeocodeKey', r'SYNCHRONIZER_TOKEN', r'\bMM_\w+', r'mouseflow', r'issuuembed',
    )
]
MEANINGFUL_WORD_PATTERN = re.compile(r'[a-zA-Z]{3,}')

# =============================================================================
# TEXT NORMALIZATION
# =============================================================================

NOISE_PATTERNS = [
    re.compile(r'\{[^{}]*"@(?:context|type)"[^{}]*\}', re.DOTALL),                  # JSON-LD
    re.compile(r'<script[^>]*>.*?</script>', re.DOTALL | re.IGNORECASE),
    re.compile(r'<style[^>]*>.*?</style>', re.DOTALL | re.IGNORECASE),
    re.compile(r'\bfunction\s*\w*\s*\([^)]*\)\s*\{[^{}]*\}'),
    re.compile(r'\b(?:var|let|const)\s+\w+\s*=\s*[^;\n]+;'),
    re.compile(r'[^{}\n]{0,200}\{[^{}]*:[^{}]*;[^{}]*\}'),                               # CSS rules
    re.compile(r'\b[\w.+-]+@[\w-]+\.[\w.-]+\b'),                                         # emails
    re.compile(r'\bhttps?://\S+', re.IGNORECASE),
    re.compile(r'\bwww\.\S+', re.IGNORECASE),
    re.compile(r'\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b', re.IGNORECASE),
    re.compile(r'\b(?=[A-Za-z]*\d)(?=\d*[A-Za-z])[A-Za-z0-9]{20,}\b'),                    # tracking ids
]
WEB_NOISE_PHRASES = re.compile(
    r'\b(?:skip to (?:main )?content|skip navigation|accept (?:all )?cookies|'
    r'cookie (?:policy|settings|preferences)|we use cookies[^.\n]*\.?|privacy policy|'
    r'terms (?:of (?:service|use)|and conditions)|all rights reserved|read more|learn more|'
    r'click here|back to top|share this(?: page| article| post)?|follow us on \w+|'
    r'(?:sign up for|subscribe to) our newsletter|newsletter signup)\b',
    re.IGNORECASE,
)
COPYRIGHT_PATTERN = re.compile(r'(?:copyright\s*)?©\s*\d{4}|copyright \d{4}', re.IGNORECASE)
CODE_LINE_PATTERNS = [
    re.compile(r'^[\s{}()\[\];,.=<>/*+\-|&!:]+$'),
    re.compile(r'^\s*(?:import|export|return|const|let|var)\s'),
    re.compile(r'^\s*(?:if|for|while|switch)\s*\('),
    re.compile(r'^\s*(?://|/\*|\*/)'),
    re.compile(r'=>|\)\s*;\s*$|;\s*\}\s*$'),
]
ALPHA_PATTERN = re.compile(r'[a-zA-Z]')
INLINE_SPACE_PATTERN = re.compile(r'[ \t\r\f\v]+')
SHORT_PAGE_PATTERN = re.compile(r'/(?:contact|contact-us|about|about-us|location|locations|hours|team)/?$', re.IGNORECASE)


def alpha_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(ALPHA_PATTERN.findall(text)) / len(text)


class TextSanitizer(object):
    """
    Cleans fetched pages and uploaded text and decides whether they are good
    enough to be chunked and stored.

    Args:
        cfg (DictConfig): full configuration; only the 'quality' section is read
    """
    def __init__(self, cfg: Optional[DictConfig] = None) -> None:
        quality_cfg = cfg.get('quality', {}) if cfg is not None else {}
        self.min_length = quality_cfg.get('min_length', 100)
        self.short_min_length = quality_cfg.get('short_min_length', 50)
        self.min_readable_ratio = quality_cfg.get('min_readable_ratio', 0.2)
        self.min_line_alpha_ratio = quality_cfg.get('min_line_alpha_ratio', 0.3)
        self.noise_word_ratio = quality_cfg.get('noise_word_ratio', 0.05)
        html_processing = quality_cfg.get('html_processing', {})
        if isinstance(html_processing, DictConfig):
            html_processing = OmegaConf.to_container(html_processing, resolve=True)
        self.html_processing = html_processing or {}

    # -------------------------------------------------------------------------
    # quality gate
    # -------------------------------------------------------------------------

    def is_corrupted(self, text: str) -> Optional[str]:
        """
        Check text for encoded or binary payloads.

        Returns:
            Optional[str]: the rejection reason, or None if the text looks readable
        """
        stripped = (text or '').strip()
        for reason, pattern in CORRUPTED_PATTERNS:
            if pattern.search(stripped):
                return reason

        total = len(stripped)
        if total > 50:
            readable = len(READABLE_CHAR_PATTERN.findall(stripped))
            threshold = self.min_readable_ratio if total > 200 else self.min_readable_ratio / 2
            if readable / total < threshold:
                return f"readable character ratio {readable / total:.2f} below {threshold:.2f}"
        return None

    def check_quality(self, text: str) -> None:
        reason = self.is_corrupted(text)
        if reason:
            logger.warning(f"Rejecting corrupted content ({reason}): {text.strip()[:100]!r}")
            raise ContentRejected(reason, text.strip())

    @staticmethod
    def clean_encoding(text: str) -> str:
        for bad, good in ENCODING_FIXES:
            text = text.replace(bad, good)
        return text

    def looks_like_noise(self, text: str) -> bool:
        """True when extracted text is mostly CSS, JavaScript or markup residue."""
        if any(p.search(text) for p in CSS_JS_PATTERNS):
            return True
        if not text:
            return True
        return len(MEANINGFUL_WORD_PATTERN.findall(text)) / len(text) < self.noise_word_ratio

    # -------------------------------------------------------------------------
    # normalization
    # -------------------------------------------------------------------------

    def _is_code_line(self, line: str) -> bool:
        return any(p.search(line) for p in CODE_LINE_PATTERNS)

    def clean_text(self, text: str) -> str:
        """
        Strip boilerplate and noise and normalize whitespace.

        Paragraph breaks (blank lines) are preserved, everything else collapses to
        single spaces. Lines that are too short, look like code or are mostly
        non-alphabetic are dropped.
        """
        for pattern in NOISE_PATTERNS:
            text = pattern.sub(' ', text)
        text = WEB_NOISE_PHRASES.sub(' ', text)
        text = COPYRIGHT_PATTERN.sub(' ', text)

        paragraphs: List[str] = []
        current: List[str] = []
        for raw_line in text.split('\n'):
            line = INLINE_SPACE_PATTERN.sub(' ', raw_line).strip()
            if not line:
                if current:
                    paragraphs.append(' '.join(current))
                    current = []
                continue
            if len(line) < 3 or self._is_code_line(line):
                continue
            if alpha_ratio(line) <= self.min_line_alpha_ratio:
                continue
            current.append(line)
        if current:
            paragraphs.append(' '.join(current))
        return '\n\n'.join(paragraphs).strip()

    # -------------------------------------------------------------------------
    # HTML extraction
    # -------------------------------------------------------------------------

    @staticmethod
    def _block_text(root) -> str:
        for tag in root.find_all(BLOCK_TAGS):
            tag.insert_before(PARAGRAPH_MARK)
            tag.insert_after(PARAGRAPH_MARK)
        text = collapse_whitespace(root.get_text(' '))
        paragraphs = [p.strip() for p in text.split(PARAGRAPH_MARK)]
        return '\n\n'.join(p for p in paragraphs if p)

    @staticmethod
    def _meta_content(soup, **attrs) -> str:
        tag = soup.find('meta', attrs=attrs)
        if tag and tag.get('content'):
            return collapse_whitespace(tag['content'])
        return ''

    def extract_title(self, soup) -> str:
        if soup.title and soup.title.get_text(strip=True):
            return collapse_whitespace(soup.title.get_text())
        og_title = self._meta_content(soup, property='og:title')
        if og_title:
            return og_title
        h1 = soup.find('h1')
        if h1 and h1.get_text(strip=True):
            return collapse_whitespace(h1.get_text(' '))
        return 'Untitled'

    def extract_html(self, html: str) -> Tuple[str, str, str]:
        """
        Extract the title, description and main text of an HTML page.

        Strategies are tried in order: scoped content containers, the whole body and
        finally a plain text conversion that skips non-content elements. A strategy
        wins if it yields at least 100 characters that do not look like script or
        style residue.

        Returns:
            Tuple[str, str, str]: (title, description, text)
        """
        soup = BeautifulSoup(html, 'html.parser')
        title = self.extract_title(soup)
        description = self._meta_content(soup, name='description') or self._meta_content(soup, property='og:description')

        for selector in REMOVE_SELECTORS:
            for element in soup.select(selector):
                if not element.decomposed:
                    element.decompose()
        for tag in self.html_processing.get('tags_to_remove', []):
            for element in soup.find_all(tag):
                element.decompose()
        for class_name in self.html_processing.get('classes_to_remove', []):
            for element in soup.find_all(class_=class_name):
                element.decompose()
        for element_id in self.html_processing.get('ids_to_remove', []):
            for element in soup.find_all(id=element_id):
                element.decompose()

        # 1. scoped content containers
        parts = []
        for selector in CONTENT_SELECTORS:
            for element in soup.select(selector):
                if element.decomposed:
                    continue
                text = self._block_text(element)
                if text and text not in parts and not any(text in p for p in parts):
                    parts.append(text)
            if parts:
                break
        text = '\n\n'.join(parts)
        if len(text) >= 100 and not self.looks_like_noise(text):
            return title, description, text
        logger.debug(f"Content containers yielded {len(text)} usable chars, trying body")

        # 2. whole body
        body = soup.body or soup
        text = self._block_text(body)
        if len(text) >= 100 and not self.looks_like_noise(text):
            return title, description, text
        logger.debug(f"Body yielded {len(text)} usable chars, falling back to text conversion")

        # 3. text conversion of the original markup
        text = html_to_text(html, self.html_processing)
        return title, description, text

    # -------------------------------------------------------------------------
    # entry points
    # -------------------------------------------------------------------------

    def _minimum_length(self, url: str, content_type: str) -> int:
        if content_type == 'text' or SHORT_PAGE_PATTERN.search(url or ''):
            return self.short_min_length
        return self.min_length

    def _build_document(self, url: str, title: str, description: str, body: str,
                        source: SourceDescriptor, minimum: int) -> SanitizedDocument:
        self.check_quality(body)
        cleaned = self.clean_text(self.clean_encoding(body))
        title = collapse_whitespace(self.clean_encoding(title)) or 'Untitled'
        description = collapse_whitespace(self.clean_encoding(description))

        header = [p for p in (title if title != 'Untitled' else '', description) if p and p not in cleaned[:500]]
        full_text = '\n\n'.join(header + [cleaned]) if cleaned else ''
        if len(full_text) < minimum:
            logger.info(f"Rejecting {url or title}: {len(full_text)} chars after cleaning (minimum {minimum})")
            raise ContentRejected(f"content too short ({len(full_text)} < {minimum} characters)", full_text)

        return SanitizedDocument(
            url=url,
            title=title,
            cleaned_text=full_text,
            content_hash=sha256_hex(full_text),
            source=source,
            description=description,
        )

    def sanitize(self, raw: RawFetchResult, source: SourceDescriptor) -> SanitizedDocument:
        """
        Turn a fetched page into a SanitizedDocument.

        Raises:
            ContentRejected: if the content is corrupted, noisy or too short
        """
        content_type = raw.content_type or detect_content_type(raw.body)
        if content_type == 'html':
            title, description, body = self.extract_html(raw.body)
        else:
            body = raw.body or ''
            first_line = next((ln.strip() for ln in body.splitlines() if ln.strip()), '')
            title, description = first_line[:100] or 'Untitled', ''
        return self._build_document(raw.url, title, description, body, source,
                                    self._minimum_length(raw.url, content_type))

    def sanitize_text(self, text: str, source: SourceDescriptor, title: Optional[str] = None) -> SanitizedDocument:
        """Sanitize already-extracted plain text, e.g. from an uploaded file."""
        text = text or ''
        if not title:
            title = next((ln.strip() for ln in text.splitlines() if ln.strip()), '')[:100] or source.display_name
        return self._build_document(source.source_url, title, '', text, source, self.short_min_length)
