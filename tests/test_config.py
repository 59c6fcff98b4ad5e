#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module provides unit tests for the configuration loading, validation,
defaults and environment variable override functionality.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from org_federation.config import (
    ConfigLoader, ConfigurationError, load_config, get_target_config, target_env_prefix
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'targets': [
                {
                    'name': 'contoso-aad',
                    'type': 'azure_ad',
                    'platform': 'azuread',
                    'slug': 'contoso',
                    'root_group_id': '11111111-2222-3333-4444-555555555555',
                    'tenant_id': 'tenant-guid',
                    'client_id': 'client-guid',
                    'client_secret': 'file-secret'
                },
                {
                    'name': 'corp-ldap',
                    'type': 'ldap',
                    'platform': 'ldap',
                    'slug': 'corp',
                    'root_group_id': 'a1b2c3',
                    'server_url': 'ldaps://dc01.corp.example.com',
                    'bind_dn': 'CN=svc,DC=corp,DC=example,DC=com',
                    'bind_password': 'file-password',
                    'base_dn': 'DC=corp,DC=example,DC=com'
                }
            ],
            'logging': {
                'level': 'DEBUG',
                'log_dir': 'logs'
            },
            'error_handling': {
                'max_retries': 5
            }
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def test_valid_config(self):
        """Test loading a valid configuration applies defaults."""
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(len(config['targets']), 2)
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['retention_days'], 7)
        self.assertEqual(config['error_handling']['max_retries'], 5)
        self.assertEqual(config['error_handling']['retry_backoff'], 2.0)

        aad, ldap = config['targets']
        self.assertTrue(aad['verify_ssl'])
        self.assertEqual(aad['timeout'], 30)
        self.assertEqual(ldap['id_attribute'], 'objectGUID')
        self.assertEqual(ldap['other_emails_attribute'], 'otherMailbox')
        self.assertEqual(ldap['error_handling']['max_retries'], 5)

    def test_target_error_handling_overrides_global(self):
        self.valid_config['targets'][0]['error_handling'] = {'max_retries': 1}
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['targets'][0]['error_handling'], {'max_retries': 1})
        self.assertEqual(config['targets'][1]['error_handling']['max_retries'], 5)

    def test_missing_targets(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config({'targets': []})).load()
        self.assertIn('At least one target', str(ctx.exception))

    def test_missing_required_fields_collected(self):
        del self.valid_config['targets'][0]['slug']
        del self.valid_config['targets'][1]['base_dn']

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()

        message = str(ctx.exception)
        self.assertIn('targets[0].slug', message)
        self.assertIn('targets[1].base_dn', message)

    def test_unsupported_type(self):
        self.valid_config['targets'][0]['type'] = 'okta'
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertIn("Unsupported type 'okta'", str(ctx.exception))

    def test_duplicate_names(self):
        self.valid_config['targets'][1]['name'] = 'contoso-aad'
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertIn('Duplicate target name', str(ctx.exception))

    def test_slug_must_be_single_segment(self):
        self.valid_config['targets'][0]['slug'] = 'contoso.eu'
        self.valid_config['targets'][1]['platform'] = 'ld ap'
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertIn('targets[0].slug', str(ctx.exception))
        self.assertIn('targets[1].platform', str(ctx.exception))

    def test_env_var_overrides(self):
        """Test environment variable overrides for target secrets."""
        env = {
            'CONTOSO_AAD_CLIENT_SECRET': 'env-secret',
            'CORP_LDAP_BIND_PASSWORD': 'env-password'
        }
        with patch.dict(os.environ, env):
            config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['targets'][0]['client_secret'], 'env-secret')
        self.assertEqual(config['targets'][1]['bind_password'], 'env-password')

    def test_env_var_supplies_missing_secret(self):
        del self.valid_config['targets'][0]['client_secret']
        with patch.dict(os.environ, {'CONTOSO_AAD_CLIENT_SECRET': 'env-secret'}):
            config = ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertEqual(config['targets'][0]['client_secret'], 'env-secret')

    def test_env_prefix(self):
        self.assertEqual(target_env_prefix('contoso-aad'), 'CONTOSO_AAD')
        self.assertEqual(target_env_prefix('corp.ldap 2'), 'CORP_LDAP_2')

    def test_invalid_yaml(self):
        """Test handling of invalid YAML syntax."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("invalid: yaml: syntax: [\n")
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('YAML', str(ctx.exception))

    def test_empty_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("")
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError):
            ConfigLoader(f.name).load()

    def test_missing_config_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/tmp/non_existent_org_federation.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_config_path_from_env(self):
        path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)


class TestGetTargetConfig(unittest.TestCase):
    """Test cases for picking a target."""

    def setUp(self):
        self.config = {'targets': [{'name': 'a'}, {'name': 'b'}]}

    def test_first_by_default(self):
        self.assertEqual(get_target_config(self.config)['name'], 'a')

    def test_by_name(self):
        self.assertEqual(get_target_config(self.config, 'b')['name'], 'b')

    def test_unknown_name(self):
        with self.assertRaises(ConfigurationError) as ctx:
            get_target_config(self.config, 'c')
        self.assertIn('a, b', str(ctx.exception))


if __name__ == '__main__':
    unittest.main()
