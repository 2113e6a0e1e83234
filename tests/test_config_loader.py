import os
import tempfile
import unittest
from unittest.mock import patch

from orchestrator.config_loader import RuntimeConfig, build_session, load_runtime_config
from orchestrator.errors import ConfigError


class TestLoadRuntimeConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = os.path.join(self.tmp.name, "runtime.yaml")

    def write(self, text):
        with open(self.path, "w") as f:
            f.write(text)

    def test_defaults_without_file(self):
        cfg = load_runtime_config(os.path.join(self.tmp.name, "missing.yaml"), environ={})
        self.assertEqual(cfg, RuntimeConfig())

    def test_yaml_values_are_coerced(self):
        self.write("aws_region: eu-west-1\nlock_ttl_seconds: '120'\npoll_delay: 2\nspot: 'yes'\n")
        cfg = load_runtime_config(self.path, environ={})
        self.assertEqual(cfg.aws_region, "eu-west-1")
        self.assertEqual(cfg.lock_ttl_seconds, 120)
        self.assertEqual(cfg.poll_delay, 2.0)
        self.assertIs(cfg.spot, True)

    def test_environment_wins_over_yaml(self):
        self.write("aws_region: eu-west-1\ninstance_type: t3.micro\n")
        cfg = load_runtime_config(self.path, environ={"AWS_REGION": "us-west-2", "WAIT_FOR_SNAPSHOT": "false"})
        self.assertEqual(cfg.aws_region, "us-west-2")
        self.assertEqual(cfg.instance_type, "t3.micro")
        self.assertIs(cfg.wait_for_snapshot, False)

    def test_bad_number(self):
        self.write("lock_timeout: soon\n")
        with self.assertRaises(ConfigError):
            load_runtime_config(self.path, environ={})

    def test_bad_lock_backend(self):
        with self.assertRaises(ConfigError):
            load_runtime_config(self.path, environ={"LOCK_BACKEND": "redis"})

    def test_non_mapping_file(self):
        self.write("- a\n- b\n")
        with self.assertRaises(ConfigError):
            load_runtime_config(self.path, environ={})

    def test_key_file_path(self):
        cfg = RuntimeConfig(key_pair_name="mine", key_dir="/keys")
        self.assertEqual(str(cfg.key_file_path()), "/keys/mine.pem")
        with self.assertRaises(ConfigError):
            RuntimeConfig().key_file_path()

    def test_with_overrides_skips_none(self):
        cfg = RuntimeConfig(aws_region="us-east-1").with_overrides(aws_region=None, spot=True)
        self.assertEqual(cfg.aws_region, "us-east-1")
        self.assertTrue(cfg.spot)


class TestBuildSession(unittest.TestCase):
    def test_region_required(self):
        with self.assertRaises(ConfigError):
            build_session(RuntimeConfig())

    @patch("orchestrator.config_loader.boto3.Session")
    def test_explicit_credentials(self, session):
        build_session(RuntimeConfig(aws_region="us-east-1", aws_access_key_id="AK", aws_secret_access_key="SK"))
        session.assert_called_once_with(aws_access_key_id="AK", aws_secret_access_key="SK", region_name="us-east-1")

    @patch("orchestrator.config_loader.boto3.Session")
    def test_default_credential_chain(self, session):
        build_session(RuntimeConfig(aws_region="us-east-1"))
        session.assert_called_once_with(region_name="us-east-1")


if __name__ == '__main__':
    unittest.main()
