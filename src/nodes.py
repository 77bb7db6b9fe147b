"""
Node Store - Kubernetes Node object access.

Reads and conditionally writes Node objects through the API server. Writes
carry the resourceVersion captured at read time, so a concurrent writer
causes a 409 Conflict instead of a lost update.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp
from kubernetes_asyncio import client
from kubernetes_asyncio.client.rest import ApiException

logger = logging.getLogger(__name__)


class NodeStoreError(Exception):
    """Failed to read or write a Node object."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class NodeConflictError(NodeStoreError):
    """The Node changed since it was read (resourceVersion mismatch)."""


class NodeNotFoundError(NodeStoreError):
    """The Node does not exist."""


@dataclass
class NodeRecord:
    """A Node object as last read from the API server."""

    name: str
    resource_version: str
    annotations: Dict[str, str] = field(default_factory=dict)
    manifest: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "NodeRecord":
        metadata = manifest.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            resource_version=metadata.get("resourceVersion", ""),
            annotations=dict(metadata.get("annotations") or {}),
            manifest=manifest,
        )

    def with_annotations(self, annotations: Optional[Dict[str, str]]) -> "NodeRecord":
        """Return a copy carrying new annotations and the same resourceVersion."""
        return NodeRecord(
            name=self.name,
            resource_version=self.resource_version,
            annotations=dict(annotations or {}),
            manifest=self.manifest,
        )

    def to_manifest(self) -> Dict[str, Any]:
        """Build the update body; the stored manifest is left untouched."""
        manifest = copy.deepcopy(self.manifest)
        metadata = manifest.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["resourceVersion"] = self.resource_version
        metadata["annotations"] = dict(self.annotations)
        manifest.setdefault("apiVersion", "v1")
        manifest.setdefault("kind", "Node")
        return manifest


def _store_error(e: ApiException, action: str, name: str) -> NodeStoreError:
    message = f"Failed to {action} node {name!r}: {e.status} - {e.reason}"
    if e.status == 409:
        return NodeConflictError(message, status=e.status)
    if e.status == 404:
        return NodeNotFoundError(message, status=e.status)
    return NodeStoreError(message, status=e.status)


class KubeNodeStore:
    """Node store backed by the Kubernetes core/v1 API."""

    def __init__(self, api_client: client.ApiClient, request_timeout: float = 30.0):
        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.request_timeout = request_timeout

    def _to_record(self, node: client.V1Node) -> NodeRecord:
        return NodeRecord.from_manifest(self.api_client.sanitize_for_serialization(node))

    async def get_node(self, name: str) -> NodeRecord:
        """
        Fetch the latest version of a Node.

        Raises:
            NodeNotFoundError: If the Node does not exist.
            NodeStoreError: On any other API or transport failure.
        """
        try:
            node = await self.core_v1.read_node(
                name, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            raise _store_error(e, "get", name) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NodeStoreError(f"Failed to get node {name!r}: {e}") from e

        record = self._to_record(node)
        logger.debug(f"Fetched node {name} at resourceVersion {record.resource_version}")
        return record

    async def update_node(self, record: NodeRecord) -> NodeRecord:
        """
        Replace a Node, conditional on its resourceVersion.

        Raises:
            NodeConflictError: If the Node was modified since it was read.
            NodeStoreError: On any other API or transport failure.
        """
        try:
            node = await self.core_v1.replace_node(
                record.name, record.to_manifest(), _request_timeout=self.request_timeout
            )
        except ApiException as e:
            raise _store_error(e, "update", record.name) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NodeStoreError(f"Failed to update node {record.name!r}: {e}") from e

        return self._to_record(node)
