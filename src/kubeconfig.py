"""
Cluster access configuration.

Builds a Kubernetes client configuration either from the pod's service
account (in-cluster) or from a kubeconfig file. Loading is delegated to the
Kubernetes client's own loaders, which install refresh hooks for rotated
service account tokens and for exec and auth-provider credentials.
"""

import logging
import os
from typing import Optional

import yaml
from kubernetes_asyncio import client, config
from kubernetes_asyncio.config import ConfigException
from kubernetes_asyncio.config.incluster_config import InClusterConfigLoader

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


class KubeConfigError(Exception):
    """Cluster credentials could not be loaded."""


async def load_kubeconfig(
    path: str, context: Optional[str] = None
) -> client.Configuration:
    """
    Load cluster settings from a kubeconfig file.

    Args:
        path: Path to the kubeconfig file.
        context: Context name to use instead of current-context.

    Raises:
        KubeConfigError: If the file is unreadable or the context is incomplete.
    """
    configuration = client.Configuration()
    try:
        await config.load_kube_config(
            config_file=path, context=context, client_configuration=configuration
        )
    except (ConfigException, OSError, yaml.YAMLError) as e:
        raise KubeConfigError(f"Failed to load kubeconfig {path}: {e}") from e

    logger.debug(f"Using kubeconfig {path} ({configuration.host})")
    return configuration


def load_incluster_config(
    service_account_dir: str = SERVICE_ACCOUNT_DIR,
) -> client.Configuration:
    """
    Load cluster settings from the pod's service account.

    The token is re-read from the service account directory when it
    expires, so projected token rotation is picked up.

    Raises:
        KubeConfigError: If not running inside a pod.
    """
    configuration = client.Configuration()
    loader = InClusterConfigLoader(
        token_filename=os.path.join(service_account_dir, "token"),
        cert_filename=os.path.join(service_account_dir, "ca.crt"),
    )
    try:
        loader.load_and_set(configuration)
    except ConfigException as e:
        raise KubeConfigError(f"Unable to load in-cluster configuration: {e}") from e

    logger.debug(f"Using in-cluster configuration ({configuration.host})")
    return configuration


async def build_cluster_config(
    kubeconfig: Optional[str] = None,
) -> client.Configuration:
    """Use the kubeconfig file if given, otherwise assume in-cluster."""
    if kubeconfig:
        return await load_kubeconfig(kubeconfig)
    return load_incluster_config()
