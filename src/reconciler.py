"""
Node Annotation Reconciler - read-modify-write of the CSI node ID annotation.

Each edit is applied from a fresh read of the Node and written back
conditionally on the resourceVersion that read returned. A conflicting
concurrent writer makes the write fail, and the whole cycle is redone from
fresh state. No local locking is involved.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from annotations import (
    ANNOTATION_KEY,
    AnnotationCorrupt,
    AnnotationEncodeError,
    clone_and_add_annotation,
    decode_driver_map,
    encode_driver_map,
    remove_driver,
    upsert_driver,
)
from nodes import NodeConflictError, NodeRecord

logger = logging.getLogger(__name__)

DriverMapEdit = Callable[[Dict[str, str]], Tuple[Dict[str, str], bool]]


class NodeStore(Protocol):
    async def get_node(self, name: str) -> NodeRecord: ...

    async def update_node(self, record: NodeRecord) -> NodeRecord: ...


class ReconcileConflictExhausted(Exception):
    """Every write attempt within the retry budget hit a version conflict."""

    def __init__(self, node_name: str, attempts: int):
        self.node_name = node_name
        self.attempts = attempts
        super().__init__(
            f"Node {node_name!r} update still conflicting after {attempts} attempts"
        )


@dataclass
class RetryPolicy:
    """Retry budget and backoff curve for conflicting writes."""

    steps: int = 5
    initial_delay: float = 0.01  # seconds
    factor: float = 2.0
    max_delay: float = 1.0  # seconds
    jitter: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.steps < 1:
            raise ValueError("Retry policy needs at least one attempt")

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        base = min(self.initial_delay * (self.factor ** (attempt - 1)), self.max_delay)
        return max(0.0, base * (1 + random.uniform(-self.jitter, self.jitter)))


@dataclass
class EditResult:
    """Outcome of a single apply_edit call."""

    node_name: str
    changed: bool = False
    attempts: int = 1
    value: Optional[str] = None


class NodeAnnotationReconciler:
    """Applies driver map edits to a Node's annotation under optimistic concurrency."""

    def __init__(self, store: NodeStore, retry: Optional[RetryPolicy] = None):
        self.store = store
        self.retry = retry or RetryPolicy()

    async def apply_edit(self, node_name: str, edit: DriverMapEdit) -> EditResult:
        """
        Apply one edit to the driver map stored on a Node.

        Args:
            node_name: Name of the Node object.
            edit: Function returning (new driver map, changed).

        Returns:
            EditResult. changed is False when the Node already matched.

        Raises:
            NodeStoreError: If the fetch fails, or the write fails for a
                reason other than a version conflict. Not retried.
            AnnotationError: If the annotation cannot be decoded or encoded.
            ReconcileConflictExhausted: If every attempt conflicted.
        """
        for attempt in range(1, self.retry.steps + 1):
            # Always start from the latest version so existing changes
            # are not overwritten.
            try:
                record = await self.store.get_node(node_name)
            except Exception as e:
                logger.error(f"Failed to get latest version of Node {node_name}: {e}")
                raise

            previous = record.annotations.get(ANNOTATION_KEY, "")
            logger.debug(f"Node {node_name} {ANNOTATION_KEY}={previous!r}")

            try:
                driver_map = decode_driver_map(previous)
            except AnnotationCorrupt as e:
                logger.error(f"Node {node_name}: {e}")
                raise

            updated, changed = edit(driver_map)
            if not changed:
                logger.debug(
                    f"Node {node_name} annotation {ANNOTATION_KEY} already up to "
                    f"date: {previous!r}"
                )
                return EditResult(node_name=node_name, changed=False, attempts=attempt)

            try:
                value = encode_driver_map(updated)
            except AnnotationEncodeError as e:
                logger.error(f"Node {node_name}: {e}")
                raise

            desired = record.with_annotations(
                clone_and_add_annotation(record.annotations, ANNOTATION_KEY, value)
            )

            try:
                await self.store.update_node(desired)
            except NodeConflictError as e:
                if attempt == self.retry.steps:
                    logger.warning(f"Conflict updating node {node_name}: {e}")
                    break
                delay = self.retry.delay(attempt)
                logger.info(
                    f"Conflict updating node {node_name} "
                    f"(attempt {attempt}/{self.retry.steps}), retrying in {delay:.3f}s"
                )
                await asyncio.sleep(delay)
                continue

            return EditResult(
                node_name=node_name, changed=True, attempts=attempt, value=value
            )

        raise ReconcileConflictExhausted(node_name, self.retry.steps)

    async def add_node_id(
        self, node_name: str, driver_name: str, node_id: str
    ) -> EditResult:
        """Make sure {driver_name: node_id} is present in the Node annotation."""
        result = await self.apply_edit(
            node_name, lambda m: upsert_driver(m, driver_name, node_id)
        )
        if result.changed:
            logger.info(
                f"Updated node {node_name} successfully for CSI driver "
                f"{driver_name} and CSI node ID {node_id}"
            )
        else:
            logger.debug(
                f"The key value {{{driver_name!r}: {node_id!r}}} already exists in "
                f"node {node_name} annotation {ANNOTATION_KEY}"
            )
        return result

    async def remove_node_id(self, node_name: str, driver_name: str) -> EditResult:
        """Remove driver_name from the Node annotation if present."""
        result = await self.apply_edit(
            node_name, lambda m: remove_driver(m, driver_name)
        )
        if result.changed:
            logger.info(
                f"Updated node {node_name} annotation to remove CSI driver {driver_name}"
            )
        else:
            logger.debug(
                f"The key {driver_name!r} does not exist in node {node_name} "
                f"annotation {ANNOTATION_KEY}, no need to clean up"
            )
        return result
