"""Unit tests for config.py - Configuration management."""

import os
import subprocess
import sys

import pytest
from unittest.mock import patch

import config
from config import (
    DEFAULT_KUBELET_REGISTRATION_PATH,
    DriverConfig,
    RegistrationConfig,
    NodeConfig,
    Config,
    load_config,
    get_config,
    reset_config,
)


class TestDriverConfig:
    """Tests for DriverConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = DriverConfig()
        assert cfg.csi_address == "/run/csi/socket"
        assert cfg.connection_timeout == 60.0
        assert cfg.call_timeout == 1.0

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "CSI_ADDRESS": "/csi/csi.sock",
            "CONNECTION_TIMEOUT": "15",
            "CSI_TIMEOUT": "2.5",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DriverConfig.from_env()
            assert cfg.csi_address == "/csi/csi.sock"
            assert cfg.connection_timeout == 15.0
            assert cfg.call_timeout == 2.5

    def test_from_env_defaults(self):
        """Test that defaults are used when env vars not set."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = DriverConfig.from_env()
            assert cfg.csi_address == "/run/csi/socket"
            assert cfg.connection_timeout == 60.0


class TestRegistrationConfig:
    """Tests for RegistrationConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = RegistrationConfig()
        assert cfg.kubelet_registration_path == DEFAULT_KUBELET_REGISTRATION_PATH
        assert cfg.registration_dir == "/registration"
        assert cfg.supported_versions == ["0.2.0", "0.3.0"]

    def test_supported_versions_not_shared(self):
        """Test that each instance gets its own version list."""
        first = RegistrationConfig()
        first.supported_versions.append("1.0.0")
        assert RegistrationConfig().supported_versions == ["0.2.0", "0.3.0"]

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "KUBELET_REGISTRATION_PATH": "/var/lib/kubelet/plugins/ebs/csi.sock",
            "REGISTRATION_DIR": "/plugins_registry",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = RegistrationConfig.from_env()
            assert cfg.kubelet_registration_path == "/var/lib/kubelet/plugins/ebs/csi.sock"
            assert cfg.registration_dir == "/plugins_registry"

    def test_from_env_empty_path_disables_server(self):
        """Test that an explicitly empty path is kept empty."""
        with patch.dict(os.environ, {"KUBELET_REGISTRATION_PATH": ""}, clear=True):
            cfg = RegistrationConfig.from_env()
            assert cfg.kubelet_registration_path == ""


class TestNodeConfig:
    """Tests for NodeConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = NodeConfig()
        assert cfg.node_name == ""
        assert cfg.kubeconfig is None
        assert cfg.reconcile_interval == 120.0
        assert cfg.retry_steps == 5
        assert cfg.backoff_initial_delay == 0.01
        assert cfg.backoff_factor == 2.0
        assert cfg.backoff_max_delay == 1.0
        assert cfg.backoff_jitter == 0.1

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "KUBE_NODE_NAME": "worker-3",
            "KUBECONFIG": "/etc/kubernetes/kubelet.conf",
            "RECONCILE_INTERVAL": "30",
            "CONFLICT_RETRY_STEPS": "8",
            "CONFLICT_BACKOFF_INITIAL_DELAY": "0.05",
            "CONFLICT_BACKOFF_FACTOR": "1.5",
            "CONFLICT_BACKOFF_MAX_DELAY": "2",
            "CONFLICT_BACKOFF_JITTER": "0.2",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = NodeConfig.from_env()
            assert cfg.node_name == "worker-3"
            assert cfg.kubeconfig == "/etc/kubernetes/kubelet.conf"
            assert cfg.reconcile_interval == 30.0
            assert cfg.retry_steps == 8
            assert cfg.backoff_initial_delay == 0.05
            assert cfg.backoff_factor == 1.5
            assert cfg.backoff_max_delay == 2.0
            assert cfg.backoff_jitter == 0.2

    def test_from_env_empty_kubeconfig_means_in_cluster(self):
        """Test that an empty KUBECONFIG is treated as unset."""
        env_vars = {"KUBE_NODE_NAME": "worker-3", "KUBECONFIG": ""}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = NodeConfig.from_env()
            assert cfg.kubeconfig is None

    def test_from_env_missing_node_name_raises(self):
        """Test that missing node name raises ValueError."""
        with patch.dict(os.environ, {"KUBE_NODE_NAME": ""}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                NodeConfig.from_env()
            assert "KUBE_NODE_NAME" in str(exc_info.value)


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        """Test default configuration."""
        cfg = Config.default()
        assert isinstance(cfg.driver, DriverConfig)
        assert isinstance(cfg.registration, RegistrationConfig)
        assert isinstance(cfg.node, NodeConfig)
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        """Test loading full configuration from environment."""
        env_vars = {
            "KUBE_NODE_NAME": "worker-1",
            "CSI_ADDRESS": "/csi/csi.sock",
            "KUBELET_REGISTRATION_PATH": "",
            "RECONCILE_INTERVAL": "10",
            "LOG_LEVEL": "DEBUG",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = Config.from_env()
            assert cfg.node.node_name == "worker-1"
            assert cfg.driver.csi_address == "/csi/csi.sock"
            assert cfg.registration.kubelet_registration_path == ""
            assert cfg.node.reconcile_interval == 10.0
            assert cfg.log_level == "DEBUG"

    def test_from_env_requires_node_name(self):
        """Test that the node name is required in every mode."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError):
                Config.from_env()


class TestConfigSingleton:
    """Tests for config singleton functions."""

    def setup_method(self):
        """Reset config before each test."""
        reset_config()

    def teardown_method(self):
        """Reset config after each test."""
        reset_config()

    def test_load_config(self):
        """Test load_config function."""
        env_vars = {
            "KUBE_NODE_NAME": "worker-1",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = load_config()
            assert cfg is not None
            assert isinstance(cfg, Config)

    def test_get_config_loads_if_none(self):
        """Test get_config loads config if not loaded."""
        env_vars = {
            "KUBE_NODE_NAME": "worker-1",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = get_config()
            assert cfg is not None
            assert isinstance(cfg, Config)

    def test_singleton_returns_same_instance(self):
        """Test that singleton returns same instance."""
        env_vars = {
            "KUBE_NODE_NAME": "worker-1",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg1 = load_config()
            cfg2 = get_config()
            assert cfg1 is cfg2

    def test_reset_config(self):
        """Test reset_config clears the singleton."""
        env_vars = {
            "KUBE_NODE_NAME": "worker-1",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg1 = load_config()
            reset_config()
            assert config.config is None
            cfg2 = load_config()
            # After reset, should be a new instance
            assert cfg1 is not cfg2


class TestModuleImports:
    """Tests for config's import footprint."""

    def test_config_does_not_load_grpc(self):
        """Loading configuration must not pull in the gRPC runtime."""
        src_dir = os.path.dirname(config.__file__)
        result = subprocess.run(
            [sys.executable, "-c", "import sys, config; print('grpc' in sys.modules)"],
            cwd=src_dir,
            capture_output=True,
            text=True,
            check=True,
        )
        assert result.stdout.strip() == "False"

    def test_registration_shares_supported_versions(self):
        import registration

        assert registration.SUPPORTED_VERSIONS is config.SUPPORTED_VERSIONS
