import unittest

from core.chunker import SemanticChunker, generate_chunk_id, is_likely_heading, reconstruct
from core.models import SanitizedDocument
from core.sources import describe_web_source
from core.utils import sha256_hex


def make_document(text, url='https://acme.com/guide'):
    return SanitizedDocument(
        url=url,
        title='Assembly Guide',
        cleaned_text=text,
        content_hash=sha256_hex(text),
        source=describe_web_source(url),
    )


def paragraphs(n):
    return '\n\n'.join(
        f"Paragraph {i} explains how the widget assembly line handles part number {i} with care and precision."
        for i in range(n)
    )


class TestSemanticChunker(unittest.TestCase):

    def setUp(self):
        self.chunker = SemanticChunker(primary_size=300, context_size=500, max_size=600, overlap_size=60,
                                       context_paragraphs=2, sentence_context_chars=200)

    def test_generate_chunk_id(self):
        chunk_id = generate_chunk_id('abc', 0)
        self.assertEqual(len(chunk_id), 12)
        self.assertEqual(chunk_id, generate_chunk_id('abc', 0))
        self.assertNotEqual(chunk_id, generate_chunk_id('abc', 1))

    def test_is_likely_heading(self):
        self.assertTrue(is_likely_heading('Installation Guide'))
        self.assertTrue(is_likely_heading('SAFETY NOTES FOR OPERATORS.'))
        self.assertTrue(is_likely_heading('Step 3. tighten the bolts.'))
        self.assertFalse(is_likely_heading('this is a sentence in a paragraph.'))
        self.assertFalse(is_likely_heading(''))

    def test_empty_document(self):
        self.assertEqual(self.chunker.chunk(make_document('')), [])

    def test_chunks_are_ordered_and_bounded(self):
        doc = make_document(paragraphs(12))
        chunks = self.chunker.chunk(doc)
        self.assertGreater(len(chunks), 1)
        for i, chunk in enumerate(chunks):
            self.assertEqual(chunk.index, i)
            self.assertEqual(chunk.total_chunks, len(chunks))
            self.assertEqual(chunk.document_id, doc.document_id)
            self.assertEqual(chunk.id, generate_chunk_id(doc.document_id, i))
            self.assertEqual(chunk.metadata['chunk_index'], i)
            self.assertLessEqual(len(chunk.primary_text), 600)
        self.assertTrue(chunks[-1].metadata['is_final_chunk'])
        self.assertFalse(chunks[0].metadata['is_final_chunk'])

    def test_chunking_is_deterministic(self):
        doc = make_document(paragraphs(12))
        first = [(c.id, c.primary_text) for c in self.chunker.chunk(doc)]
        second = [(c.id, c.primary_text) for c in self.chunker.chunk(doc)]
        self.assertEqual(first, second)

    def test_overlap(self):
        chunks = self.chunker.chunk(make_document(paragraphs(12)))
        self.assertEqual(chunks[0].metadata['overlap_chars'], 0)
        second = chunks[1]
        self.assertTrue(second.metadata['overlap_text'])
        self.assertTrue(second.primary_text.startswith(second.metadata['overlap_text']))
        # 60 // 6 words at a plain paragraph boundary
        self.assertEqual(len(second.metadata['overlap_text'].split()), 10)
        self.assertTrue(chunks[0].primary_text.endswith(second.metadata['overlap_text']))

    def test_reconstruct(self):
        doc = make_document(paragraphs(12))
        self.assertEqual(reconstruct(self.chunker.chunk(doc)), doc.cleaned_text)

    def test_reconstruct_long_paragraph(self):
        sentence = "The conveyor moves each housing to the next station where it is inspected. "
        text = "Overview\n\n" + (sentence * 15).strip() + "\n\n" + paragraphs(2)
        chunks = self.chunker.chunk(make_document(text))
        self.assertTrue(any(c.metadata['is_long_paragraph_split'] for c in chunks))
        self.assertEqual(reconstruct(chunks), text)

    def test_context_from_neighbouring_paragraphs(self):
        doc = make_document(paragraphs(12))
        chunks = self.chunker.chunk(doc)
        # chunk 1 holds paragraphs 3 and 4
        self.assertIn('Paragraph 2 ', chunks[1].context_text)
        self.assertIn('Paragraph 5 ', chunks[1].context_text)
        self.assertNotIn('Paragraph 0 ', chunks[1].context_text)
        self.assertLessEqual(len(chunks[1].context_text), 500 + 2)

    def test_single_chunk_uses_document_tail_as_context(self):
        doc = make_document(paragraphs(2))
        chunks = self.chunker.chunk(doc)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].context_text, doc.cleaned_text)
        self.assertEqual(chunks[0].primary_text, doc.cleaned_text)

    def test_short_chunks_are_dropped(self):
        doc = make_document('Too short to keep.')
        self.assertEqual(self.chunker.chunk(doc), [])

    def test_from_config(self):
        chunker = SemanticChunker.from_config({'chunking': {'primary_size': 1000, 'overlap_size': 100}})
        self.assertEqual(chunker.primary_size, 1000)
        self.assertEqual(chunker.overlap_size, 100)
        self.assertEqual(chunker.context_size, 4000)
        self.assertEqual(chunker.max_size, 12000)


if __name__ == '__main__':
    unittest.main()
