#!/usr/bin/env python3
"""
Configuration Unit Tests
"""

import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from carpso.config import CarpsoConfig, load_config, setup_logging
from carpso.domain.models import InvalidInputError


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def write_yaml(self, text):
        path = os.path.join(self.tmp_dir, "carpso.yaml")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return path

    def test_defaults(self):
        config = load_config(environ={})

        self.assertIsNone(config.database_url)
        self.assertEqual(config.broker_type, "memory")
        self.assertEqual(config.reservation_timeout_seconds, 60)
        self.assertTrue(config.seed_defaults)

    def test_yaml_file(self):
        path = self.write_yaml(
            "database_url: sqlite:///carpso.db\n"
            "cache_ttl_seconds: 30\n"
            "seed_defaults: false\n"
            "publish_retry_delay: 0\n"
        )

        config = load_config(path, environ={})

        self.assertEqual(config.database_url, "sqlite:///carpso.db")
        self.assertEqual(config.cache_ttl_seconds, 30)
        self.assertFalse(config.seed_defaults)
        self.assertEqual(config.publish_retry_delay, 0.0)

    def test_environment_wins_over_file(self):
        path = self.write_yaml("broker_type: redis\nreservation_timeout_seconds: 30\n")

        config = load_config(path, environ={
            "CARPSO_BROKER_TYPE": "rabbitmq",
            "CARPSO_RESERVATION_TIMEOUT_SECONDS": "90",
            "CARPSO_SEED_DEFAULTS": "no",
        })

        self.assertEqual(config.broker_type, "rabbitmq")
        self.assertEqual(config.reservation_timeout_seconds, 90)
        self.assertFalse(config.seed_defaults)

    def test_empty_environment_value_disables_backend(self):
        config = load_config(environ={"CARPSO_BROKER_TYPE": ""})
        self.assertIsNone(config.broker_type)

    def test_empty_file(self):
        self.assertEqual(load_config(self.write_yaml(""), environ={}), CarpsoConfig())

    def test_invalid_files_and_values(self):
        test_cases = [
            ("unknown_key: 1\n", {}),
            ("- a\n- b\n", {}),
            ("", {"CARPSO_CACHE_TTL_SECONDS": "soon"}),
            ("cache_ttl_seconds: 0\n", {}),
            ("", {"CARPSO_RESERVATION_TIMEOUT_SECONDS": "-5"}),
        ]
        for text, environ in test_cases:
            with self.subTest(text=text, environ=environ):
                with self.assertRaises(InvalidInputError):
                    load_config(self.write_yaml(text), environ=environ)


class TestSetupLogging(unittest.TestCase):

    def test_creates_log_dir_and_returns_logger(self):
        tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp_dir)
        log_dir = os.path.join(tmp_dir, "logs")

        with patch("carpso.config.logging.basicConfig") as basic_config:
            logger = setup_logging(CarpsoConfig(log_dir=log_dir, log_level="debug"))

        self.assertTrue(os.path.isdir(log_dir))
        self.assertEqual(logger.name, "carpso")
        kwargs = basic_config.call_args[1]
        self.assertEqual(kwargs["level"], logging.DEBUG)
        self.assertEqual(len(kwargs["handlers"]), 2)
        for handler in kwargs["handlers"]:
            handler.close()


if __name__ == '__main__':
    unittest.main()
