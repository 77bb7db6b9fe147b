"""
CSI driver connection.

Discovers the driver's identity (name and node ID) over the driver's gRPC
socket. Both values are fetched once at startup.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import grpc

from protocol import csi_pb2, csi_pb2_grpc

logger = logging.getLogger(__name__)

# Default timeout of short CSI calls like GetPluginInfo
CSI_TIMEOUT = 1.0


class CSIConnectionError(Exception):
    """The CSI driver could not be reached or gave an unusable answer."""


@dataclass(frozen=True)
class DriverIdentity:
    """The immutable (name, node ID) pair reported by the CSI driver."""

    name: str
    node_id: str


def _target(address: str) -> str:
    if "://" in address or address.startswith("unix:"):
        return address
    return f"unix://{address}"


class CSIConnection:
    """gRPC connection to a CSI driver socket."""

    def __init__(self, address: str, connection_timeout: float = 60.0):
        self.address = address
        self.connection_timeout = connection_timeout
        self._channel: Optional[grpc.aio.Channel] = None

    async def connect(self) -> None:
        """
        Open the channel and wait until the driver socket accepts connections.

        Raises:
            CSIConnectionError: If the driver is not ready within the timeout.
        """
        logger.info(f"Attempting to open a gRPC connection with: {self.address!r}")
        self._channel = grpc.aio.insecure_channel(_target(self.address))
        try:
            await asyncio.wait_for(
                self._channel.channel_ready(), timeout=self.connection_timeout
            )
        except asyncio.TimeoutError as e:
            await self.close()
            raise CSIConnectionError(
                f"Timed out after {self.connection_timeout}s waiting for CSI "
                f"driver at {self.address}"
            ) from e
        logger.debug(f"Connected to CSI driver at {self.address}")

    async def close(self) -> None:
        if self._channel is not None:
            await self._channel.close()
            self._channel = None

    async def __aenter__(self) -> "CSIConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_channel(self) -> grpc.aio.Channel:
        if self._channel is None:
            raise CSIConnectionError("CSI connection is not open")
        return self._channel

    async def get_driver_name(self, timeout: float = CSI_TIMEOUT) -> str:
        stub = csi_pb2_grpc.IdentityStub(self._require_channel())
        try:
            response = await stub.GetPluginInfo(
                csi_pb2.GetPluginInfoRequest(), timeout=timeout
            )
        except grpc.aio.AioRpcError as e:
            raise CSIConnectionError(
                f"GetPluginInfo failed: {e.code().name}: {e.details()}"
            ) from e
        if not response.name:
            raise CSIConnectionError("CSI driver returned empty name")
        return response.name

    async def get_node_id(self, timeout: float = CSI_TIMEOUT) -> str:
        stub = csi_pb2_grpc.NodeStub(self._require_channel())
        try:
            response = await stub.NodeGetId(csi_pb2.NodeGetIdRequest(), timeout=timeout)
        except grpc.aio.AioRpcError as e:
            raise CSIConnectionError(
                f"NodeGetId failed: {e.code().name}: {e.details()}"
            ) from e
        if not response.node_id:
            raise CSIConnectionError("CSI driver returned empty node ID")
        return response.node_id


async def fetch_driver_identity(
    connection: CSIConnection, timeout: float = CSI_TIMEOUT
) -> DriverIdentity:
    """Ask the driver for its name and node ID."""
    logger.info("Calling CSI driver to discover driver name")
    name = await connection.get_driver_name(timeout)
    logger.info(f"CSI driver name: {name!r}")

    logger.info("Calling CSI driver to discover node ID")
    node_id = await connection.get_node_id(timeout)
    logger.info(f"CSI driver node ID: {node_id!r}")

    return DriverIdentity(name=name, node_id=node_id)
