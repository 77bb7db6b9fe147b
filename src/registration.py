"""
Registration Server - kubelet plugin watcher handshake.

Serves the pluginregistration.Registration gRPC service on a unix socket in
the kubelet plugin registration directory. The watcher calls GetInfo to learn
the driver's name and endpoint, then reports the outcome through
NotifyRegistrationStatus.

A failed registration cannot be repaired from inside this process, so it is
surfaced to the owner of the server as RegistrationFailedError; the owner
exits non-zero and the container runtime restarts the sidecar.
"""

import asyncio
import contextlib
import logging
import os
import stat
from typing import Iterator, Optional, Sequence

import grpc

from config import DEFAULT_REGISTRATION_DIR, SUPPORTED_VERSIONS
from protocol import CSI_PLUGIN, registration_pb2, registration_pb2_grpc

logger = logging.getLogger(__name__)


class SocketPathError(Exception):
    """The registration socket could not be prepared or bound."""


class RegistrationFailedError(Exception):
    """The kubelet reported that plugin registration failed."""

    def __init__(self, error: str):
        self.error = error
        super().__init__(f"Registration process failed with error: {error}")


def registration_socket_path(
    driver_name: str, registration_dir: str = DEFAULT_REGISTRATION_DIR
) -> str:
    return os.path.join(registration_dir, f"{driver_name}-reg.sock")


def prepare_socket_path(path: str) -> None:
    """
    Remove a socket, stale or not, left at path.

    Raises:
        SocketPathError: If path exists but is not a socket, or cannot be
            inspected or removed.
    """
    try:
        mode = os.lstat(path).st_mode
    except FileNotFoundError:
        return
    except OSError as e:
        raise SocketPathError(f"failed to stat the socket {path} with error: {e}") from e

    if not stat.S_ISSOCK(mode):
        raise SocketPathError(f"{path} exists and is not a socket")

    try:
        os.remove(path)
    except OSError as e:
        raise SocketPathError(
            f"failed to remove stale socket {path} with error: {e}"
        ) from e
    logger.debug(f"Removed stale socket {path}")


@contextlib.contextmanager
def restricted_umask(mask: int = 0o077) -> Iterator[None]:
    """Only the owning user gets access to files created inside the block."""
    old_mask = os.umask(mask)
    try:
        yield
    finally:
        os.umask(old_mask)


class RegistrationServicer(registration_pb2_grpc.RegistrationServicer):
    """Answers the plugin watcher's registration calls."""

    def __init__(
        self,
        driver_name: str,
        endpoint: str,
        supported_versions: Optional[Sequence[str]] = None,
    ):
        self.driver_name = driver_name
        self.endpoint = endpoint
        self.supported_versions = list(
            SUPPORTED_VERSIONS if supported_versions is None else supported_versions
        )
        self.failure: Optional[RegistrationFailedError] = None
        self.failed = asyncio.Event()

    async def GetInfo(self, request, context):
        logger.info(f"Received GetInfo call: {request}")
        return registration_pb2.PluginInfo(
            type=CSI_PLUGIN,
            name=self.driver_name,
            endpoint=self.endpoint,
            supported_versions=self.supported_versions,
        )

    async def NotifyRegistrationStatus(self, status, context):
        logger.info(
            f"Received NotifyRegistrationStatus call: "
            f"plugin_registered={status.plugin_registered} error={status.error!r}"
        )
        if not status.plugin_registered:
            logger.error(
                f"Registration process failed with error: {status.error!r}, "
                f"restarting registration container."
            )
            self.failure = RegistrationFailedError(status.error)
            self.failed.set()
        return registration_pb2.RegistrationStatusResponse()


class RegistrationServer:
    """grpc.aio server exposing the RegistrationServicer on a unix socket."""

    def __init__(self, servicer: RegistrationServicer, socket_path: str):
        self.servicer = servicer
        self.socket_path = socket_path
        self._server: Optional[grpc.aio.Server] = None

    async def start(self) -> None:
        """
        Bind the socket and start serving.

        Raises:
            SocketPathError: If the socket path is unusable or binding fails.
        """
        prepare_socket_path(self.socket_path)

        logger.info(f"Starting Registration Server at: {self.socket_path}")
        server = grpc.aio.server()
        registration_pb2_grpc.add_RegistrationServicer_to_server(self.servicer, server)

        # Default to only user accessible socket, caller can open up later
        with restricted_umask():
            try:
                server.add_insecure_port(f"unix://{self.socket_path}")
                await server.start()
            except RuntimeError as e:
                raise SocketPathError(
                    f"failed to listen on socket: {self.socket_path} with error: {e}"
                ) from e

        self._server = server
        logger.info(f"Registration Server started at: {self.socket_path}")

    async def wait(self) -> None:
        """
        Serve until the server stops or registration fails.

        Returns normally when the server was stopped gracefully.

        Raises:
            RegistrationFailedError: If the watcher reported a failed registration.
        """
        if self._server is None:
            raise RuntimeError("Registration server is not started")

        terminated = asyncio.create_task(self._server.wait_for_termination())
        failed = asyncio.create_task(self.servicer.failed.wait())
        try:
            await asyncio.wait({terminated, failed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (terminated, failed):
                if not task.done():
                    task.cancel()

        if self.servicer.failure is not None:
            # let the acknowledgement reach the watcher
            await self.stop(grace=0.5)
            raise self.servicer.failure
        logger.info("Registration Server stopped serving")

    async def stop(self, grace: Optional[float] = None) -> None:
        if self._server is not None:
            await self._server.stop(grace)
