import unittest
import os
import logging

from omegaconf import OmegaConf
from omegaconf.errors import ConfigKeyError, ValidationError

from core.utils import load_config
from core.config_schema import check_config

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

test_config_directories = [
    os.path.join(REPO_ROOT, 'config'),
    os.path.join(REPO_ROOT, 'config-private'),
]


logger = logging.getLogger(__name__)


class TestStructuredConfig(unittest.TestCase):

    def test_defaults_are_valid(self):
        cfg = check_config(load_config())
        self.assertEqual(cfg.storage.backend, 'local')
        self.assertEqual(cfg.fetch.max_concurrent, 3)
        self.assertEqual(cfg.executor.min_interval, 1.5)
        self.assertEqual(cfg.jobs.max_jobs, 100)

    def test_unknown_key_is_rejected(self):
        with self.assertRaises(ConfigKeyError):
            check_config(OmegaConf.create({'crawl': {'max_pagez': 10}}))

    def test_wrong_type_is_rejected(self):
        with self.assertRaises(ValidationError):
            check_config(OmegaConf.create({'crawl': {'max_pages': 'many'}}))


def create_test_method(filepath):
    def test_method(self):
        config = load_config(filepath)
        logger.info(f"Loaded config: {config}")
        self.assertIsNotNone(config)
        merged = check_config(config)
        self.assertIn(merged.storage.backend, ('local', 's3'))
        self.assertIn(merged.reindex.backend, ('none', 'bedrock', 'http'))

    return test_method

for test_directory in test_config_directories:
    if os.path.exists(test_directory):
        for filename in os.listdir(test_directory):
            if filename.endswith(('.yml', '.yaml')):
                filepath = os.path.join(test_directory, filename)
                test_name = f"test_config_{os.path.splitext(filename)[0].replace('-', '_')}"
                setattr(TestStructuredConfig, test_name, create_test_method(filepath))
