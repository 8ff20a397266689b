import unittest
import tempfile
import os
import re
from unittest.mock import Mock, patch
from omegaconf import OmegaConf

from core.errors import ValidationError
from core.utils import (
    normalize_url,
    get_file_extension,
    get_domain,
    get_origin,
    sanitize_url,
    html_to_text,
    get_docker_or_local_path,
    setup_logging,
    load_config,
    update_omega_conf,
    create_session_with_retries,
    configure_session_for_ssl,
    get_headers,
    url_matches_patterns,
    sha256_hex,
    short_hash,
    collapse_whitespace,
)


class TestUtils(unittest.TestCase):

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up after each test method."""
        import shutil
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    # =============================================================================
    # FILE UTILITIES TESTS
    # =============================================================================

    @patch('os.path.exists')
    @patch('os.makedirs')
    @patch('core.utils.logger')
    def test_get_docker_or_local_path_docker_exists(self, mock_logger, mock_makedirs, mock_exists):
        """Test Docker path is used when it exists."""
        mock_exists.return_value = True
        result = get_docker_or_local_path('/docker/path')
        self.assertEqual(result, '/docker/path')
        mock_logger.info.assert_called_with('Using Docker path: /docker/path')
        mock_makedirs.assert_not_called()

    @patch('os.path.exists')
    @patch('os.makedirs')
    @patch('os.getcwd')
    @patch('core.utils.logger')
    def test_get_docker_or_local_path_local_fallback(self, mock_logger, mock_getcwd, mock_makedirs, mock_exists):
        """Test local path fallback when Docker path doesn't exist."""
        mock_exists.return_value = False
        mock_getcwd.return_value = '/current/dir'
        result = get_docker_or_local_path('/docker/path')
        expected = '/current/dir/content_ingest_output'
        self.assertEqual(result, expected)
        mock_makedirs.assert_called_once_with(expected, exist_ok=True)

    def test_get_docker_or_local_path_absolute_output_dir(self):
        """Test an absolute output dir is used as is and created."""
        target = os.path.join(self.temp_dir, 'out')
        result = get_docker_or_local_path('/does/not/exist', output_dir=target)
        self.assertEqual(result, target)
        self.assertTrue(os.path.isdir(target))

    def test_get_docker_or_local_path_delete_existing(self):
        """Test existing local output is removed when requested."""
        target = os.path.join(self.temp_dir, 'out')
        os.makedirs(target)
        with open(os.path.join(target, 'old.txt'), 'w') as f:
            f.write('old')
        get_docker_or_local_path('/does/not/exist', output_dir=target, should_delete_existing=True)
        self.assertEqual(os.listdir(target), [])

    # =============================================================================
    # URL UTILITIES TESTS
    # =============================================================================

    def test_normalize_url_basic(self):
        """Test basic URL normalization."""
        result = normalize_url('https://www.example.com/path?param=value')
        self.assertEqual(result, 'https://example.com/path')

    def test_normalize_url_keep_query_params(self):
        """Test URL normalization keeping query parameters."""
        result = normalize_url('https://www.example.com/path?param=value', keep_query_params=True)
        self.assertEqual(result, 'https://example.com/path?param=value')

    def test_normalize_url_no_scheme(self):
        """Test URL normalization with no scheme."""
        result = normalize_url('example.com/path')
        self.assertEqual(result, 'http://example.com/path')

    def test_normalize_url_root_path(self):
        """Test URL normalization with root path."""
        result = normalize_url('https://example.com/')
        self.assertEqual(result, 'https://example.com/')

    def test_normalize_url_trailing_slash_and_case(self):
        self.assertEqual(normalize_url('HTTPS://WWW.Example.COM/About/'), 'https://example.com/About')

    def test_get_file_extension(self):
        """Test file extension extraction from URL."""
        result = get_file_extension('https://example.com/path/file.PDF')
        self.assertEqual(result, '.pdf')

    def test_get_file_extension_no_extension(self):
        """Test file extension extraction with no extension."""
        result = get_file_extension('https://example.com/path/file')
        self.assertEqual(result, '')

    def test_get_domain_strips_www_and_port(self):
        self.assertEqual(get_domain('https://www.Example.com:8080/x'), 'example.com')

    def test_get_origin(self):
        self.assertEqual(get_origin('https://docs.example.com/a/b?c=1'), 'https://docs.example.com')

    def test_sanitize_url_adds_scheme_and_strips_prefix(self):
        """Test URLs pasted with stray characters are cleaned up."""
        self.assertEqual(sanitize_url('  @example.com '), 'https://example.com')
        self.assertEqual(sanitize_url('#https://example.com/about'), 'https://example.com/about')
        self.assertEqual(sanitize_url('http://localhost:8000/page'), 'http://localhost:8000/page')

    def test_sanitize_url_rejects_malformed(self):
        for bad in ['', '   ', 'not a url', 'ftp://example.com/file']:
            with self.assertRaises(ValidationError):
                sanitize_url(bad)

    # =============================================================================
    # TEXT UTILITIES TESTS
    # =============================================================================

    def test_html_to_text_basic(self):
        """Test basic HTML to text conversion."""
        html = '<html><body><h1>Title</h1><p>Paragraph</p></body></html>'
        result = html_to_text(html)
        self.assertIn('Title', result)
        self.assertIn('Paragraph', result)
        self.assertIn('\n\n', result)

    def test_html_to_text_remove_script_and_nav(self):
        """Test HTML to text drops scripts and navigation."""
        html = '<html><body><nav>Menu</nav><script>alert("test")</script><p>Content</p></body></html>'
        result = html_to_text(html)
        self.assertNotIn('alert', result)
        self.assertNotIn('Menu', result)
        self.assertIn('Content', result)

    def test_html_to_text_remove_ids(self):
        """Test HTML to text with ID removal."""
        html = '<html><body><div id="remove-me">Remove this</div><p>Keep this</p></body></html>'
        result = html_to_text(html, html_processing={'ids_to_remove': ['remove-me']})
        self.assertNotIn('Remove this', result)
        self.assertIn('Keep this', result)

    def test_html_to_text_remove_tags(self):
        """Test HTML to text with tag removal."""
        html = '<html><body><section>Section text</section><p>Content</p></body></html>'
        result = html_to_text(html, html_processing={'tags_to_remove': ['section']})
        self.assertNotIn('Section text', result)
        self.assertIn('Content', result)

    def test_html_to_text_remove_classes(self):
        """Test HTML to text with class removal."""
        html = '<html><body><div class="ad">Advertisement</div><p>Content</p></body></html>'
        result = html_to_text(html, html_processing={'classes_to_remove': ['ad']})
        self.assertNotIn('Advertisement', result)
        self.assertIn('Content', result)

    def test_collapse_whitespace(self):
        self.assertEqual(collapse_whitespace('  a \n\t b  '), 'a b')
        self.assertEqual(collapse_whitespace(None), '')

    def test_sha256_hex(self):
        self.assertEqual(sha256_hex('abc'), 'ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad')
        self.assertEqual(short_hash('abc'), 'ba7816bf')
        self.assertEqual(len(short_hash('abc', 12)), 12)

    # =============================================================================
    # HTTP/SESSION UTILITIES TESTS
    # =============================================================================

    def test_create_session_with_retries(self):
        """Test creating session with retry configuration."""
        session = create_session_with_retries(retries=3)
        self.assertIsNotNone(session)
        # Check that adapters are mounted
        self.assertIn('http://', session.adapters)
        self.assertIn('https://', session.adapters)
        self.assertEqual(session.adapters['https://'].max_retries.total, 3)

    def test_create_session_without_retries(self):
        session = create_session_with_retries(retries=0)
        self.assertEqual(session.adapters['https://'].max_retries.total, 0)

    @patch('core.utils.logger')
    def test_configure_session_for_ssl_disable(self, mock_logger):
        """Test SSL configuration with verification disabled."""
        session = Mock()
        config = OmegaConf.create({'ssl_verify': False})
        configure_session_for_ssl(session, config)
        self.assertFalse(session.verify)
        mock_logger.warning.assert_called_once()

    @patch('core.utils.logger')
    def test_configure_session_for_ssl_string_false(self, mock_logger):
        """Test SSL configuration with string 'false'."""
        session = Mock()
        config = OmegaConf.create({'ssl_verify': 'false'})
        configure_session_for_ssl(session, config)
        self.assertFalse(session.verify)
        mock_logger.warning.assert_called_once()

    @patch('core.utils.logger')
    def test_configure_session_for_ssl_default(self, mock_logger):
        """Test SSL configuration with default settings."""
        session = Mock()
        config = OmegaConf.create({'ssl_verify': True})
        configure_session_for_ssl(session, config)
        mock_logger.debug.assert_called_once()

    @patch('os.path.exists')
    @patch('core.utils.logger')
    def test_configure_session_for_ssl_custom_cert(self, mock_logger, mock_exists):
        """Test SSL configuration with custom certificate."""
        mock_exists.return_value = True
        session = Mock()
        config = OmegaConf.create({'ssl_verify': '/path/to/cert.pem'})
        configure_session_for_ssl(session, config)
        self.assertEqual(session.verify, '/path/to/cert.pem')
        mock_logger.info.assert_called_once()

    @patch('os.path.exists')
    @patch('os.path.expanduser')
    def test_configure_session_for_ssl_cert_not_found(self, mock_expanduser, mock_exists):
        """Test SSL configuration with certificate not found."""
        mock_exists.return_value = False
        mock_expanduser.return_value = '/expanded/path/cert.pem'
        session = Mock()
        config = OmegaConf.create({'ssl_verify': '/path/to/cert.pem'})
        with self.assertRaises(FileNotFoundError):
            configure_session_for_ssl(session, config)

    def test_get_headers_default(self):
        """Test getting HTTP headers with default user agent."""
        cfg = OmegaConf.create({'fetch': {}})
        headers = get_headers(cfg)
        self.assertIn('User-Agent', headers)
        self.assertIn('Accept', headers)
        self.assertIn('Accept-Language', headers)

    def test_get_headers_custom_user_agent(self):
        """Test getting HTTP headers with custom user agent."""
        cfg = OmegaConf.create({'fetch': {'user_agent': 'CustomBot/1.0'}})
        headers = get_headers(cfg)
        self.assertEqual(headers['User-Agent'], 'CustomBot/1.0')

    # =============================================================================
    # CONFIGURATION UTILITIES TESTS
    # =============================================================================

    @patch('core.utils.OmegaConf.load')
    @patch('core.utils.logger')
    def test_load_config_single_file(self, mock_logger, mock_load):
        """Test loading single configuration file."""
        mock_config = OmegaConf.create({'crawl': {'max_pages': 5}})
        mock_load.return_value = mock_config

        result = load_config('config.yaml')
        self.assertEqual(result.crawl.max_pages, 5)
        self.assertEqual(result.crawl.batch_size, 3)
        mock_logger.info.assert_called_once()

    @patch('core.utils.OmegaConf.load')
    @patch('core.utils.logger')
    def test_load_config_multiple_files(self, mock_logger, mock_load):
        """Test loading multiple configuration files."""
        mock_config1 = OmegaConf.create({'fetch': {'timeout': 10}})
        mock_config2 = OmegaConf.create({'fetch': {'timeout': 20}})
        mock_load.side_effect = [mock_config1, mock_config2]

        result = load_config('config1.yaml', 'config2.yaml')
        self.assertEqual(result.fetch.timeout, 20)
        self.assertEqual(mock_logger.info.call_count, 2)

    def test_load_config_defaults_only(self):
        result = load_config()
        self.assertEqual(result.storage.backend, 'local')
        self.assertEqual(result.executor.max_retries, 5)
        self.assertEqual(result.discovery.timeout, 1200)

    def test_update_omega_conf_adds_missing_key(self):
        cfg = OmegaConf.create({'storage': {'backend': 'local'}})
        update_omega_conf(cfg, 'test', 'storage.bucket', 'my-bucket')
        update_omega_conf(cfg, 'test', 'storage.backend', 's3')
        self.assertEqual(cfg.storage.bucket, 'my-bucket')
        self.assertEqual(cfg.storage.backend, 's3')

    @patch('logging.getLogger')
    @patch('logging.StreamHandler')
    @patch('sys.stdout')
    def test_setup_logging_default(self, mock_stdout, mock_handler, mock_get_logger):
        """Test logging setup with default level."""
        mock_root_logger = Mock()
        mock_root_logger.handlers = []
        mock_get_logger.return_value = mock_root_logger
        mock_handler_instance = Mock()
        mock_handler.return_value = mock_handler_instance

        setup_logging()

        mock_root_logger.setLevel.assert_called_once()
        mock_handler_instance.setLevel.assert_called_once()
        mock_root_logger.addHandler.assert_called_once()

    @patch('logging.getLogger')
    @patch('os.environ', {'LOGGING_LEVEL': 'DEBUG'})
    def test_setup_logging_env_level(self, mock_get_logger):
        """Test logging setup with environment variable."""
        mock_root_logger = Mock()
        mock_root_logger.handlers = []
        mock_get_logger.return_value = mock_root_logger

        with patch('logging.StreamHandler'):
            setup_logging()

        # Should use DEBUG level from environment
        mock_root_logger.setLevel.assert_called_once_with(10)

    # =============================================================================
    # PATTERN MATCHING UTILITIES TESTS
    # =============================================================================

    def test_url_matches_patterns_positive_match(self):
        """Test URL pattern matching with positive patterns."""
        pos_patterns = [re.compile(r'.*example\.com.*')]
        neg_patterns = []

        result = url_matches_patterns('https://example.com/page', pos_patterns, neg_patterns)
        self.assertTrue(result)

    def test_url_matches_patterns_negative_match(self):
        """Test URL pattern matching with negative patterns."""
        pos_patterns = []
        neg_patterns = [re.compile(r'.*admin.*')]

        result = url_matches_patterns('https://example.com/admin', pos_patterns, neg_patterns)
        self.assertFalse(result)

    def test_url_matches_patterns_both_patterns(self):
        """Test URL pattern matching with both positive and negative patterns."""
        pos_patterns = [re.compile(r'.*example\.com.*')]
        neg_patterns = [re.compile(r'.*admin.*')]

        result = url_matches_patterns('https://example.com/page', pos_patterns, neg_patterns)
        self.assertTrue(result)

        result = url_matches_patterns('https://example.com/admin', pos_patterns, neg_patterns)
        self.assertFalse(result)


if __name__ == '__main__':
    unittest.main()
