"""
Node ID Controller - periodic reconciliation of the CSI node ID annotation.

Runs as a sidecar in a DaemonSet. The container restart policy is always,
so the controller loops forever, re-verifying the annotation on a fixed
period, and removes its entry once when the process is interrupted.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from annotations import AnnotationError
from csi import DriverIdentity
from nodes import NodeStoreError
from reconciler import EditResult, NodeAnnotationReconciler, ReconcileConflictExhausted

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    reconcile_interval: float = 120  # seconds


class Controller:
    """
    Keeps the driver's node ID in the Node annotation.

    The driver name and node ID are assumed to be immutable, and are not
    refetched on subsequent loop iterations.
    """

    def __init__(
        self,
        reconciler: NodeAnnotationReconciler,
        identity: DriverIdentity,
        node_name: str,
        config: Optional[ControllerConfig] = None,
    ):
        self.reconciler = reconciler
        self.identity = identity
        self.node_name = node_name
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Run the reconciliation loop until stop() is called."""
        logger.info(
            f"Starting node annotation loop for driver {self.identity.name} "
            f"on node {self.node_name}"
        )
        self.running = True
        self._shutdown_event.clear()

        while self.running:
            try:
                await self.reconcile_once()
            except ReconcileConflictExhausted as e:
                logger.warning(f"Node update failed: {e}")
            except (NodeStoreError, AnnotationError) as e:
                logger.error(f"Node update failed: {e}")
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Node annotation loop stopped")

    async def stop(self):
        """Stop scheduling new cycles. An in-flight cycle is left to finish."""
        self.running = False
        self._shutdown_event.set()

    async def reconcile_once(self) -> EditResult:
        """Add the driver's node ID to the Node annotation if needed."""
        return await self.reconciler.add_node_id(
            self.node_name, self.identity.name, self.identity.node_id
        )

    async def deregister(self) -> bool:
        """
        Remove the driver's entry from the Node annotation, once.

        Best effort: failures are logged and reported, not raised.

        Returns:
            True if the entry is gone from the Node.
        """
        logger.info(
            f"Removing CSI driver {self.identity.name} from node {self.node_name}"
        )
        try:
            await self.reconciler.remove_node_id(self.node_name, self.identity.name)
        except (ReconcileConflictExhausted, NodeStoreError, AnnotationError) as e:
            logger.error(
                f"Failed to remove CSI driver {self.identity.name} from node "
                f"{self.node_name}: {e}"
            )
            return False
        return True
