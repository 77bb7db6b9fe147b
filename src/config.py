"""
Configuration module for the CSI node registrar.

Loads configuration from environment variables. Command line flags, when
given, override the values loaded here.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

# CSI versions this registrar can speak on behalf of the driver
SUPPORTED_VERSIONS: List[str] = ["0.2.0", "0.3.0"]

DEFAULT_REGISTRATION_DIR = "/registration"
DEFAULT_KUBELET_REGISTRATION_PATH = "/var/lib/kubelet/plugins/csi-hostpath/csi.sock"


@dataclass
class DriverConfig:
    """CSI driver connection configuration."""

    csi_address: str = "/run/csi/socket"
    connection_timeout: float = 60.0  # seconds to wait for the driver socket
    call_timeout: float = 1.0  # seconds per identity call

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            csi_address=os.getenv("CSI_ADDRESS", "/run/csi/socket"),
            connection_timeout=float(os.getenv("CONNECTION_TIMEOUT", "60")),
            call_timeout=float(os.getenv("CSI_TIMEOUT", "1")),
        )


@dataclass
class RegistrationConfig:
    """Kubelet plugin registration configuration."""

    # Path of the driver socket on the host, returned as the PluginInfo endpoint.
    # Empty disables the registration server and selects the annotation loop.
    kubelet_registration_path: str = DEFAULT_KUBELET_REGISTRATION_PATH
    registration_dir: str = DEFAULT_REGISTRATION_DIR
    supported_versions: List[str] = field(
        default_factory=lambda: list(SUPPORTED_VERSIONS)
    )

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubelet_registration_path=os.getenv(
                "KUBELET_REGISTRATION_PATH", DEFAULT_KUBELET_REGISTRATION_PATH
            ),
            registration_dir=os.getenv("REGISTRATION_DIR", DEFAULT_REGISTRATION_DIR),
        )


@dataclass
class NodeConfig:
    """Node annotation reconciliation configuration."""

    node_name: str = ""
    kubeconfig: Optional[str] = None
    reconcile_interval: float = 120.0  # seconds

    # Optimistic concurrency retry on conflicting writes
    retry_steps: int = 5
    backoff_initial_delay: float = 0.01  # seconds
    backoff_factor: float = 2.0
    backoff_max_delay: float = 1.0  # seconds
    backoff_jitter: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        node_name = os.getenv("KUBE_NODE_NAME", "")
        if not node_name:
            raise ValueError(
                "Node name not found. The environment variable KUBE_NODE_NAME "
                "is empty."
            )

        return cls(
            node_name=node_name,
            kubeconfig=os.getenv("KUBECONFIG") or None,
            reconcile_interval=float(os.getenv("RECONCILE_INTERVAL", "120")),
            retry_steps=int(os.getenv("CONFLICT_RETRY_STEPS", "5")),
            backoff_initial_delay=float(
                os.getenv("CONFLICT_BACKOFF_INITIAL_DELAY", "0.01")
            ),
            backoff_factor=float(os.getenv("CONFLICT_BACKOFF_FACTOR", "2.0")),
            backoff_max_delay=float(os.getenv("CONFLICT_BACKOFF_MAX_DELAY", "1.0")),
            backoff_jitter=float(os.getenv("CONFLICT_BACKOFF_JITTER", "0.1")),
        )


@dataclass
class Config:
    """Main configuration object."""

    driver: DriverConfig
    registration: RegistrationConfig
    node: NodeConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            driver=DriverConfig.from_env(),
            registration=RegistrationConfig.from_env(),
            node=NodeConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            driver=DriverConfig(),
            registration=RegistrationConfig(),
            node=NodeConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
