"""
Main entry point for the CSI node registrar.

Fetches the driver identity once, then runs in exactly one of two modes:

- registration server: answers the kubelet plugin watcher over a unix socket
  until stopped, exiting non-zero if registration fails.
- node annotation: keeps the driver's node ID in the Node annotation and
  removes it once when interrupted.
"""

import asyncio
import contextlib
import logging
import signal
import sys
from enum import Enum
from importlib import metadata
from typing import Callable, Optional

import click
from kubernetes_asyncio.client import ApiClient

from config import Config, get_config
from controller import Controller, ControllerConfig
from csi import CSIConnection, CSIConnectionError, DriverIdentity, fetch_driver_identity
from kubeconfig import KubeConfigError, build_cluster_config
from nodes import KubeNodeStore
from reconciler import NodeAnnotationReconciler, RetryPolicy
from registration import (
    RegistrationFailedError,
    RegistrationServer,
    RegistrationServicer,
    SocketPathError,
    registration_socket_path,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

try:
    VERSION = metadata.version("csi-node-registrar")
except metadata.PackageNotFoundError:
    VERSION = "unknown"


class RunMode(Enum):
    """Execution mode, chosen once at startup."""

    REGISTRATION_SERVER = "registration-server"
    NODE_ANNOTATION = "node-annotation"


def select_mode(config: Config) -> RunMode:
    """The registration server runs whenever a kubelet registration path is set."""
    if config.registration.kubelet_registration_path:
        return RunMode.REGISTRATION_SERVER
    return RunMode.NODE_ANNOTATION


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that fetches the driver identity and runs one mode."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.identity: Optional[DriverIdentity] = None
        self.registration_server: Optional[RegistrationServer] = None
        self.controller: Optional[Controller] = None
        self._stop_task: Optional[asyncio.Task] = None

    async def initialize(self) -> DriverIdentity:
        """Connect to the CSI driver and fetch its identity."""
        driver = self.config.driver
        async with CSIConnection(driver.csi_address, driver.connection_timeout) as conn:
            self.identity = await fetch_driver_identity(conn, driver.call_timeout)
        return self.identity

    def _install_signal_handlers(self, handler: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, handler)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    async def run(self) -> int:
        """Run the selected mode and return the process exit code."""
        try:
            await self.initialize()
        except CSIConnectionError as e:
            logger.error(str(e))
            return EXIT_FAILURE

        mode = select_mode(self.config)
        logger.info(f"Running in {mode.value} mode")
        if mode is RunMode.REGISTRATION_SERVER:
            return await self.run_registration_server()
        return await self.run_node_annotation()

    async def run_registration_server(self) -> int:
        """
        Serve the kubelet registration handshake.

        Node labeling is done by the kubelet's CSI code in this mode.
        """
        reg = self.config.registration
        servicer = RegistrationServicer(
            self.identity.name, reg.kubelet_registration_path, reg.supported_versions
        )
        self.registration_server = RegistrationServer(
            servicer, registration_socket_path(self.identity.name, reg.registration_dir)
        )

        try:
            await self.registration_server.start()
        except SocketPathError as e:
            logger.error(str(e))
            return EXIT_FAILURE

        def signal_handler():
            logger.info("Received shutdown signal")
            self._stop_task = asyncio.create_task(self.registration_server.stop())

        self._install_signal_handlers(signal_handler)
        try:
            await self.registration_server.wait()
            if self._stop_task is not None:
                await self._stop_task
        except RegistrationFailedError:
            return EXIT_FAILURE
        except Exception as e:
            logger.error(f"Registration Server stopped serving: {e}", exc_info=True)
            return EXIT_FAILURE
        finally:
            self._remove_signal_handlers()

        # If the gRPC server is gracefully shut down, exit cleanly
        return EXIT_OK

    async def run_node_annotation(self) -> int:
        """Reconcile the Node annotation until interrupted, then clean up."""
        node = self.config.node
        try:
            configuration = await build_cluster_config(node.kubeconfig)
        except KubeConfigError as e:
            logger.error(str(e))
            return EXIT_FAILURE

        async with ApiClient(configuration) as api_client:
            return await self._annotate_node(KubeNodeStore(api_client))

    async def _annotate_node(self, store: KubeNodeStore) -> int:
        node = self.config.node
        reconciler = NodeAnnotationReconciler(
            store,
            RetryPolicy(
                steps=node.retry_steps,
                initial_delay=node.backoff_initial_delay,
                factor=node.backoff_factor,
                max_delay=node.backoff_max_delay,
                jitter=node.backoff_jitter,
            ),
        )
        self.controller = Controller(
            reconciler,
            self.identity,
            node.node_name,
            ControllerConfig(reconcile_interval=node.reconcile_interval),
        )

        interrupted = asyncio.Event()

        def signal_handler():
            logger.info("Received shutdown signal")
            interrupted.set()

        self._install_signal_handlers(signal_handler)
        loop_task = asyncio.create_task(self.controller.start())
        try:
            await interrupted.wait()
        finally:
            self._remove_signal_handlers()

        # Deregister may overlap an in-flight add cycle; the API server's
        # resourceVersion check decides which write wins.
        await self.controller.stop()
        await self.controller.deregister()

        loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await loop_task

        # Interruption always ends the sidecar with a failure status
        return EXIT_FAILURE


def apply_overrides(
    config: Config,
    kubeconfig: Optional[str] = None,
    connection_timeout: Optional[float] = None,
    csi_address: Optional[str] = None,
    kubelet_registration_path: Optional[str] = None,
) -> Config:
    """Apply command line flags on top of the environment configuration."""
    if kubeconfig is not None:
        config.node.kubeconfig = kubeconfig
    if connection_timeout is not None:
        config.driver.connection_timeout = connection_timeout
    if csi_address is not None:
        config.driver.csi_address = csi_address
    if kubelet_registration_path is not None:
        config.registration.kubelet_registration_path = kubelet_registration_path
    return config


@click.command()
@click.option(
    "--kubeconfig",
    default=None,
    help="Absolute path to the kubeconfig file. Required only when running "
    "out of cluster.",
)
@click.option(
    "--connection-timeout",
    type=float,
    default=None,
    help="Timeout in seconds for waiting for CSI driver socket.",
)
@click.option("--csi-address", default=None, help="Address of the CSI driver socket.")
@click.option(
    "--kubelet-registration-path",
    default=None,
    help="Path of the CSI driver socket on the host, returned as the endpoint in "
    "PluginInfo. When set, the registrar only serves the kubelet plugin "
    "registration socket; pass an empty value to maintain the node annotation "
    "instead.",
)
@click.version_option(version=VERSION, prog_name="csi-node-registrar")
def cli(kubeconfig, connection_timeout, csi_address, kubelet_registration_path):
    """CSI node registrar - registers a CSI driver with the kubelet and Node."""
    try:
        config = get_config()
    except ValueError as e:
        configure_logging()
        logger.error(str(e))
        sys.exit(EXIT_FAILURE)

    apply_overrides(
        config,
        kubeconfig=kubeconfig,
        connection_timeout=connection_timeout,
        csi_address=csi_address,
        kubelet_registration_path=kubelet_registration_path,
    )
    configure_logging(config.log_level)
    logger.info(f"Version: {VERSION}")

    sys.exit(asyncio.run(Application(config).run()))


if __name__ == "__main__":
    cli()
