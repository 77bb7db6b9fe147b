"""Pytest configuration and fixtures."""

import copy
import json
from typing import Any, Callable, Dict, Optional

import pytest

from annotations import ANNOTATION_KEY
from csi import DriverIdentity
from nodes import NodeConflictError, NodeNotFoundError, NodeRecord
from reconciler import RetryPolicy


class FakeNodeStore:
    """
    In-memory node store with resourceVersion checks.

    Attributes:
        conflicts: Number of upcoming updates to reject as conflicting.
        concurrent_writer: Called with the stored manifest before each
            rejected update, to simulate another writer landing first.
        update_error: Raised from every update when set.
    """

    def __init__(self, name: str = "node-1", annotations: Optional[Dict[str, str]] = None):
        self.manifests: Dict[str, Dict[str, Any]] = {
            name: {
                "apiVersion": "v1",
                "kind": "Node",
                "metadata": {
                    "name": name,
                    "resourceVersion": "1",
                    "labels": {"kubernetes.io/hostname": name},
                    "annotations": dict(annotations or {}),
                },
                "spec": {"podCIDR": "10.244.0.0/24"},
            }
        }
        self.get_calls = 0
        self.update_calls = 0
        self.conflicts = 0
        self.concurrent_writer: Optional[Callable[[Dict[str, Any]], None]] = None
        self.update_error: Optional[Exception] = None

    def _bump(self, name: str) -> None:
        metadata = self.manifests[name]["metadata"]
        metadata["resourceVersion"] = str(int(metadata["resourceVersion"]) + 1)

    async def get_node(self, name: str) -> NodeRecord:
        self.get_calls += 1
        if name not in self.manifests:
            raise NodeNotFoundError(f"nodes {name!r} not found", status=404)
        return NodeRecord.from_manifest(copy.deepcopy(self.manifests[name]))

    async def update_node(self, record: NodeRecord) -> NodeRecord:
        self.update_calls += 1
        if self.update_error is not None:
            raise self.update_error

        if self.conflicts > 0:
            self.conflicts -= 1
            if self.concurrent_writer is not None:
                self.concurrent_writer(self.manifests[record.name])
            self._bump(record.name)

        current = self.manifests[record.name]["metadata"]["resourceVersion"]
        if current != record.resource_version:
            raise NodeConflictError(
                f"Operation cannot be fulfilled on nodes {record.name!r}: the object "
                f"has been modified",
                status=409,
            )

        self.manifests[record.name] = record.to_manifest()
        self._bump(record.name)
        return NodeRecord.from_manifest(copy.deepcopy(self.manifests[record.name]))

    def annotations(self, name: str = "node-1") -> Dict[str, str]:
        return self.manifests[name]["metadata"].get("annotations") or {}

    def driver_map(self, name: str = "node-1") -> Dict[str, str]:
        raw = self.annotations(name).get(ANNOTATION_KEY)
        return json.loads(raw) if raw else {}


@pytest.fixture
def identity():
    """Driver identity reported by the CSI driver."""
    return DriverIdentity(name="hostpath.csi.k8s.io", node_id="node-1-id")


@pytest.fixture
def store():
    """Node store holding a single node without annotations."""
    return FakeNodeStore()


@pytest.fixture
def fast_retry():
    """Retry policy with no backoff delay."""
    return RetryPolicy(steps=5, initial_delay=0, jitter=0)


@pytest.fixture
def sample_node_manifest():
    """Node object as returned by the API server."""
    return {
        "apiVersion": "v1",
        "kind": "Node",
        "metadata": {
            "name": "node-1",
            "resourceVersion": "4711",
            "uid": "2a9e7c36-0d6c-4d8e-9a3f-6f1b5b0f4a11",
            "labels": {"kubernetes.io/hostname": "node-1"},
            "annotations": {
                "node.alpha.kubernetes.io/ttl": "0",
                ANNOTATION_KEY: '{"driverA":"nodeX"}',
            },
        },
        "spec": {"podCIDR": "10.244.0.0/24"},
        "status": {"nodeInfo": {"kubeletVersion": "v1.12.0"}},
    }
