"""
Paragraph-aware chunking of sanitized documents.

Each chunk carries its own text (primary content) plus a window of surrounding
text (context content) that is stored alongside it to enrich embeddings.
Consecutive chunks overlap by a handful of words; the overlap is recorded in the
chunk metadata so the original text can be rebuilt from the chunks.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from omegaconf import DictConfig

from core.models import Chunk, SanitizedDocument
from core.utils import short_hash

logger = logging.getLogger(__name__)

PARAGRAPH_SPLIT_PATTERN = re.compile(r'\n\s*\n')
ABBREVIATIONS = ['Dr', 'Mr', 'Mrs', 'Ms', 'Prof', 'Inc', 'Ltd', 'Co', 'vs', 'etc', 'i.e', 'e.g']
# Python look-behinds must be fixed width, so every abbreviation gets its own
SENTENCE_BOUNDARY_PATTERN = re.compile(
    ''.join(rf'(?<!\b{re.escape(abbr)}\.)' for abbr in ABBREVIATIONS) + r'(?<=[.!?])\s+'
)
WORD_PATTERN = re.compile(r'\S+')
MEANINGFUL_WORD_PATTERN = re.compile(r'[a-zA-Z]{3,}')
HEADING_PREFIX_PATTERN = re.compile(r'^(chapter|section|part|step|\d+\.|\d+\))', re.IGNORECASE)

MIN_CHUNK_LENGTH = 50
MIN_SENTENCE_LENGTH = 10
MIN_DENSITY = 0.02
SHORT_DOCUMENT_LENGTH = 200


def generate_chunk_id(document_id: str, index: int) -> str:
    """Deterministic 12 character chunk id for the index-th chunk of a document."""
    return short_hash(f"{document_id}-{index}", 12)


def is_likely_heading(text: str) -> bool:
    """
    Guess whether a paragraph is a heading.

    Short capitalized lines without a terminating period, explicit
    "Chapter/Section/Step N" style prefixes and all-caps lines count as headings.
    """
    text = text.strip()
    if not text:
        return False
    if len(text) < 100 and text[0].isupper() and not text.endswith('.'):
        return True
    if HEADING_PREFIX_PATTERN.match(text):
        return True
    return len(text) > 5 and text.isupper()


def content_density(text: str) -> float:
    if not text:
        return 0.0
    return len(MEANINGFUL_WORD_PATTERN.findall(text)) / len(text)


@dataclass
class _Unit:
    """A contiguous span of the document: a whole paragraph or a piece of one."""
    start: int
    end: int
    paragraph: int
    is_split: bool = False
    is_heading: bool = False


@dataclass
class _Draft:
    units: List[_Unit]
    overlap_text: str = ""
    overlap_separator: str = ""


class SemanticChunker(object):
    """
    Split a SanitizedDocument into overlapping, context-enriched chunks.

    Args:
        primary_size (int): soft cap on the characters of primary content per chunk
        context_size (int): cap on the characters of context content per chunk
        max_size (int): hard cap on the characters of primary content per chunk
        overlap_size (int): base overlap between chunks; a boundary on a heading carries
            overlap_size/3 words, any other boundary overlap_size/6 words
        context_paragraphs (int): paragraphs taken on each side for the context window
        sentence_context_chars (int): characters taken on each side of a split paragraph piece
    """
    def __init__(self, primary_size: int = 8000, context_size: int = 4000, max_size: int = 12000,
                 overlap_size: int = 400, context_paragraphs: int = 3, sentence_context_chars: int = 2000):
        self.primary_size = primary_size
        self.context_size = context_size
        self.max_size = max(max_size, primary_size)
        self.overlap_size = overlap_size
        self.context_paragraphs = context_paragraphs
        self.sentence_context_chars = sentence_context_chars

    @classmethod
    def from_config(cls, cfg: DictConfig) -> "SemanticChunker":
        chunking_cfg = cfg.get('chunking', {}) or {}
        return cls(
            primary_size=chunking_cfg.get('primary_size', 8000),
            context_size=chunking_cfg.get('context_size', 4000),
            max_size=chunking_cfg.get('max_size', 12000),
            overlap_size=chunking_cfg.get('overlap_size', 400),
            context_paragraphs=chunking_cfg.get('context_paragraphs', 3),
            sentence_context_chars=chunking_cfg.get('sentence_context_chars', 2000),
        )

    # =========================================================================
    # splitting
    # =========================================================================

    @staticmethod
    def split_paragraphs(text: str) -> List[Tuple[int, int]]:
        """Spans of the blank-line separated paragraphs of text, whitespace trimmed."""
        spans = []
        start = 0
        boundaries = [(m.start(), m.end()) for m in PARAGRAPH_SPLIT_PATTERN.finditer(text)]
        for b_start, b_end in boundaries + [(len(text), len(text))]:
            segment = text[start:b_start]
            stripped = segment.strip()
            if stripped:
                offset = start + (len(segment) - len(segment.lstrip()))
                spans.append((offset, offset + len(stripped)))
            start = b_end
        return spans

    def split_sentences(self, text: str, start: int, end: int) -> List[Tuple[int, int]]:
        """
        Sentence spans inside text[start:end].

        Fragments of MIN_SENTENCE_LENGTH characters or less are merged into a
        neighbour so that no text is lost.
        """
        segment = text[start:end]
        spans = []
        cursor = 0
        for m in SENTENCE_BOUNDARY_PATTERN.finditer(segment):
            spans.append((start + cursor, start + m.start()))
            cursor = m.end()
        spans.append((start + cursor, end))

        merged: List[Tuple[int, int]] = []
        for s_start, s_end in spans:
            if merged and (s_end - s_start <= MIN_SENTENCE_LENGTH or merged[-1][1] - merged[-1][0] <= MIN_SENTENCE_LENGTH):
                merged[-1] = (merged[-1][0], s_end)
            else:
                merged.append((s_start, s_end))
        return merged

    def _split_words(self, text: str, start: int, end: int) -> List[Tuple[int, int]]:
        # last resort for a single sentence longer than primary_size
        spans = []
        piece_start = None
        piece_end = None
        for m in WORD_PATTERN.finditer(text, start, end):
            if piece_start is None:
                piece_start, piece_end = m.start(), m.end()
            elif m.end() - piece_start > self.primary_size:
                spans.append((piece_start, piece_end))
                piece_start, piece_end = m.start(), m.end()
            else:
                piece_end = m.end()
        if piece_start is not None:
            spans.append((piece_start, piece_end))
        return spans

    def _build_units(self, text: str) -> Tuple[List[_Unit], List[Tuple[int, int]]]:
        paragraphs = self.split_paragraphs(text)
        units = []
        for p_index, (p_start, p_end) in enumerate(paragraphs):
            if p_end - p_start <= self.primary_size:
                units.append(_Unit(p_start, p_end, p_index, is_heading=is_likely_heading(text[p_start:p_end])))
                continue
            logger.debug(f"Paragraph {p_index} has {p_end - p_start} chars, splitting into sentences")
            for s_start, s_end in self.split_sentences(text, p_start, p_end):
                if s_end - s_start <= self.primary_size:
                    units.append(_Unit(s_start, s_end, p_index, is_split=True))
                else:
                    for w_start, w_end in self._split_words(text, s_start, s_end):
                        units.append(_Unit(w_start, w_end, p_index, is_split=True))
        return units, paragraphs

    # =========================================================================
    # accumulation
    # =========================================================================

    def _overlap_for(self, text: str, draft: _Draft, next_unit: _Unit) -> str:
        heading_boundary = next_unit.is_heading or draft.units[-1].is_heading
        num_words = max(self.overlap_size // (3 if heading_boundary else 6), 0)
        if num_words == 0:
            return ""
        body = text[draft.units[0].start:draft.units[-1].end]
        words = body.split()
        return ' '.join(words[-num_words:])

    def _accumulate(self, text: str, units: List[_Unit]) -> List[_Draft]:
        drafts: List[_Draft] = []
        current: Optional[_Draft] = None
        for unit in units:
            if current is None:
                current = _Draft(units=[unit])
                continue
            overlap_len = len(current.overlap_text) + len(current.overlap_separator)
            candidate_len = overlap_len + (unit.end - current.units[0].start)
            if candidate_len <= self.primary_size:
                current.units.append(unit)
                continue

            drafts.append(current)
            overlap_text = self._overlap_for(text, current, unit)
            separator = text[current.units[-1].end:unit.start] if overlap_text else ""
            current = _Draft(units=[unit], overlap_text=overlap_text, overlap_separator=separator)
        if current is not None:
            drafts.append(current)

        # fold a tiny trailing piece back into its predecessor
        if len(drafts) > 1:
            last = drafts[-1]
            body_len = last.units[-1].end - last.units[0].start
            prev = drafts[-2]
            prev_overlap = len(prev.overlap_text) + len(prev.overlap_separator)
            merged_len = prev_overlap + (last.units[-1].end - prev.units[0].start)
            if body_len < MIN_CHUNK_LENGTH and merged_len <= self.max_size:
                prev.units.extend(last.units)
                drafts.pop()
        return drafts

    # =========================================================================
    # context
    # =========================================================================

    def _context_for(self, text: str, draft: _Draft, paragraphs: List[Tuple[int, int]], is_only_chunk: bool) -> str:
        first, last = draft.units[0], draft.units[-1]
        half = self.context_size // 2
        if first.is_split or last.is_split:
            before = text[max(0, first.start - self.sentence_context_chars):first.start].strip()
            after = text[last.end:last.end + self.sentence_context_chars].strip()
        else:
            lo = max(0, first.paragraph - self.context_paragraphs)
            hi = min(len(paragraphs), last.paragraph + 1 + self.context_paragraphs)
            before = '\n\n'.join(text[s:e] for s, e in paragraphs[lo:first.paragraph])
            after = '\n\n'.join(text[s:e] for s, e in paragraphs[last.paragraph + 1:hi])

        if not before and not after:
            # nothing surrounds a single-chunk document, use its tail
            return text[-self.context_size:].strip() if is_only_chunk else ""

        if len(before) + len(after) > self.context_size:
            after_budget = max(half, self.context_size - len(before))
            after = after[:after_budget]
            before = before[-(self.context_size - len(after)):] if self.context_size > len(after) else ""
        return '\n\n'.join(p for p in (before, after) if p)

    # =========================================================================
    # public API
    # =========================================================================

    def is_valid_chunk(self, primary_text: str, metadata: dict, document_length: int) -> bool:
        if len(primary_text.strip()) < MIN_CHUNK_LENGTH:
            return False
        if not (metadata.get('url') or metadata.get('title')):
            return False
        if document_length >= SHORT_DOCUMENT_LENGTH and content_density(primary_text) <= MIN_DENSITY:
            return False
        return True

    def chunk(self, document: SanitizedDocument) -> List[Chunk]:
        """
        Split a document into ordered chunks.

        Args:
            document (SanitizedDocument): the cleaned document

        Returns:
            List[Chunk]: chunks in document order, ids derived from (document_id, index)
        """
        text = document.cleaned_text
        units, paragraphs = self._build_units(text)
        if not units:
            return []
        drafts = self._accumulate(text, units)

        pending = []
        for d_index, draft in enumerate(drafts):
            body_start, body_end = draft.units[0].start, draft.units[-1].end
            body = text[body_start:body_end]
            prefix = draft.overlap_text + draft.overlap_separator
            primary_text = prefix + body
            context_text = self._context_for(text, draft, paragraphs, len(drafts) == 1)
            separator = text[drafts[d_index - 1].units[-1].end:body_start] if d_index > 0 else ""
            metadata = {
                'url': document.url,
                'title': document.title,
                'primary_content_length': len(primary_text),
                'context_content_length': len(context_text),
                'chunk_type': 'enhanced-dense',
                'content_density': round(content_density(primary_text), 4),
                'is_heading_start': draft.units[0].is_heading,
                'is_long_paragraph_split': any(u.is_split for u in draft.units),
                'is_final_chunk': d_index == len(drafts) - 1,
                'overlap_text': draft.overlap_text,
                'overlap_chars': len(prefix),
                'separator': separator,
                'start_offset': body_start,
                'end_offset': body_end,
            }
            if self.is_valid_chunk(primary_text, metadata, len(text)):
                pending.append((primary_text, context_text, metadata))
            else:
                logger.debug(f"Dropping invalid chunk {d_index} of {document.url or document.title}")

        chunks = []
        for index, (primary_text, context_text, metadata) in enumerate(pending):
            metadata['chunk_index'] = index
            chunks.append(Chunk(
                id=generate_chunk_id(document.document_id, index),
                document_id=document.document_id,
                index=index,
                total_chunks=len(pending),
                primary_text=primary_text,
                context_text=context_text,
                metadata=metadata,
            ))
        logger.info(f"Created {len(chunks)} chunks for {document.url or document.title} ({len(text)} chars)")
        return chunks


def reconstruct(chunks: List[Chunk]) -> str:
    """
    Rebuild the cleaned document text from its chunks by removing the overlap
    each chunk repeats from its predecessor.
    """
    parts = []
    for chunk in sorted(chunks, key=lambda c: c.index):
        body = chunk.primary_text[chunk.metadata.get('overlap_chars', 0):]
        if parts:
            parts.append(chunk.metadata.get('separator', '\n\n'))
        parts.append(body)
    return ''.join(parts)
