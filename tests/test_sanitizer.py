import unittest
from omegaconf import OmegaConf

from core.errors import ContentRejected
from core.models import RawFetchResult, SourceKind
from core.sanitizer import TextSanitizer, detect_content_type
from core.sources import describe_uploaded_file, describe_web_source
from core.utils import sha256_hex


HOME_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Acme Widgets - Home</title>
  <meta name="description" content="Acme builds reliable widgets.">
  <style>body { font-family: Arial; }</style>
</head>
<body>
  <nav>Home About Contact</nav>
  <div class="cookie-banner">We use cookies to improve your experience.</div>
  <main>
    <h1>Welcome to Acme</h1>
    <p>Acme Widgets has been building reliable industrial widgets for over thirty years.
       Our engineers design every part in house.</p>
    <p>We ship to customers in more than forty countries and offer a lifetime warranty on all products.</p>
  </main>
  <footer>All rights reserved</footer>
  <script>var tracking = 1;</script>
</body>
</html>"""

CONTACT_PAGE = """<html><body><main>
<p>Call us at our main office any weekday between nine and five.</p>
</main></body></html>"""


def raw(url, body):
    return RawFetchResult(url=url, body=body, content_type=detect_content_type(body))


class TestTextSanitizer(unittest.TestCase):

    def setUp(self):
        self.sanitizer = TextSanitizer()

    # =============================================================================
    # CONTENT TYPE DETECTION
    # =============================================================================

    def test_detect_content_type(self):
        self.assertEqual(detect_content_type('<!DOCTYPE html><html><body></body></html>'), 'html')
        self.assertEqual(detect_content_type('<div><p>Hello</p></div>'), 'html')
        self.assertEqual(detect_content_type('plain text where a < b and c > d'), 'text')
        self.assertEqual(detect_content_type(''), 'text')

    # =============================================================================
    # QUALITY GATE
    # =============================================================================

    def test_is_corrupted_base64_marker(self):
        text = "#content!base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
        self.assertIsNotNone(self.sanitizer.is_corrupted(text))

    def test_is_corrupted_long_run(self):
        self.assertIsNotNone(self.sanitizer.is_corrupted('Intro text ' + 'QUJD' * 80))

    def test_is_corrupted_low_readable_ratio(self):
        reason = self.sanitizer.is_corrupted('12345 67890 ' * 30)
        self.assertIsNotNone(reason)
        self.assertIn('readable', reason)

    def test_is_corrupted_accepts_prose_and_short_text(self):
        self.assertIsNone(self.sanitizer.is_corrupted('This is a perfectly ordinary sentence about widgets. ' * 5))
        self.assertIsNone(self.sanitizer.is_corrupted('12345'))

    def test_check_quality_raises_with_preview(self):
        text = '#content!base64,' + 'A' * 300
        with self.assertRaises(ContentRejected) as ctx:
            self.sanitizer.check_quality(text)
        self.assertLessEqual(len(ctx.exception.preview), 100)

    # =============================================================================
    # NORMALIZATION
    # =============================================================================

    def test_clean_encoding(self):
        self.assertEqual(TextSanitizer.clean_encoding('Itâ€™s here now​'), "It's here now")

    def test_clean_text_removes_noise(self):
        text = (
            "Skip to content\n"
            "Real paragraph text here about widgets.\n\n"
            "const x = 5;\n\n"
            "Email us at info@example.com today please\n\n"
            "© 2024 Acme Widgets"
        )
        cleaned = self.sanitizer.clean_text(text)
        self.assertNotIn('Skip to content', cleaned)
        self.assertNotIn('const x', cleaned)
        self.assertNotIn('@', cleaned)
        self.assertNotIn('©', cleaned)
        self.assertIn('Real paragraph text here about widgets.', cleaned)
        self.assertIn('\n\n', cleaned)
        self.assertNotIn('\n\n\n', cleaned)

    def test_looks_like_noise(self):
        self.assertTrue(self.sanitizer.looks_like_noise('body { font-family: Arial; background-color: red; }'))
        self.assertFalse(self.sanitizer.looks_like_noise('A normal paragraph describing the product range.'))

    # =============================================================================
    # DOCUMENTS
    # =============================================================================

    def test_sanitize_html_page(self):
        url = 'https://www.acme.com/'
        doc = self.sanitizer.sanitize(raw(url, HOME_PAGE), describe_web_source(url))
        self.assertEqual(doc.title, 'Acme Widgets - Home')
        self.assertEqual(doc.description, 'Acme builds reliable widgets.')
        self.assertTrue(doc.cleaned_text.startswith('Acme Widgets - Home\n\nAcme builds reliable widgets.'))
        self.assertIn('lifetime warranty', doc.cleaned_text)
        self.assertNotIn('Home About Contact', doc.cleaned_text)
        self.assertNotIn('tracking', doc.cleaned_text)
        self.assertNotIn('font-family', doc.cleaned_text)
        self.assertEqual(doc.content_hash, sha256_hex(doc.cleaned_text))
        self.assertEqual(doc.document_id, doc.content_hash)
        self.assertEqual(doc.source.kind, SourceKind.WEB)

    def test_sanitize_is_deterministic(self):
        url = 'https://acme.com/'
        first = self.sanitizer.sanitize(raw(url, HOME_PAGE), describe_web_source(url))
        second = self.sanitizer.sanitize(raw(url, HOME_PAGE), describe_web_source(url))
        self.assertEqual(first.content_hash, second.content_hash)

    def test_sanitize_rejects_short_page(self):
        url = 'https://acme.com/'
        with self.assertRaises(ContentRejected):
            self.sanitizer.sanitize(raw(url, '<html><body><p>Hi there.</p></body></html>'), describe_web_source(url))

    def test_short_pages_use_lower_minimum(self):
        contact = 'https://acme.com/contact'
        doc = self.sanitizer.sanitize(raw(contact, CONTACT_PAGE), describe_web_source(contact))
        self.assertIn('main office', doc.cleaned_text)

        home = 'https://acme.com/'
        with self.assertRaises(ContentRejected):
            self.sanitizer.sanitize(raw(home, CONTACT_PAGE), describe_web_source(home))

    def test_sanitize_rejects_corrupted_text(self):
        body = '#content!base64,' + 'QUJD' * 100
        url = 'https://acme.com/file'
        with self.assertRaises(ContentRejected):
            self.sanitizer.sanitize(RawFetchResult(url=url, body=body, content_type='text'), describe_web_source(url))

    def test_sanitize_rejects_markers_inside_prose(self):
        prose = ("Acme Widgets has been building reliable industrial widgets for over thirty years "
                 "and ships to customers in more than forty countries.")
        url = 'https://acme.com/file'
        for marker in (' #content ! base64,AAAAQUJDREVGR0g= ', ' data:image/png;base64,iVBORw0KGgo= '):
            body = prose + marker + prose
            with self.subTest(marker=marker.strip()):
                self.assertIsNotNone(self.sanitizer.is_corrupted(body))
                with self.assertRaises(ContentRejected):
                    self.sanitizer.sanitize(RawFetchResult(url=url, body=body, content_type='text'),
                                            describe_web_source(url))

    def test_sanitize_text_upload(self):
        text = (
            "Employee Handbook\n\n"
            "This handbook describes the policies that apply to every employee of the company."
        )
        source = describe_uploaded_file('acme-handbook.txt')
        doc = self.sanitizer.sanitize_text(text, source)
        self.assertEqual(doc.title, 'Employee Handbook')
        self.assertTrue(doc.cleaned_text.startswith('Employee Handbook\n\n'))
        self.assertEqual(doc.cleaned_text.count('Employee Handbook'), 1)
        self.assertEqual(doc.source.kind, SourceKind.UPLOADED_FILE)

    def test_min_length_from_config(self):
        sanitizer = TextSanitizer(OmegaConf.create({'quality': {'min_length': 10}}))
        url = 'https://acme.com/'
        doc = sanitizer.sanitize(raw(url, CONTACT_PAGE), describe_web_source(url))
        self.assertIn('main office', doc.cleaned_text)


if __name__ == '__main__':
    unittest.main()
