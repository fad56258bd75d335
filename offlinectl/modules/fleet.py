"""Per-node stage execution over a bounded worker pool."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Optional, Sequence

from .errors import StageFailed
from .models import FleetState, Node, NodeState

logger = logging.getLogger("offline.fleet")


class FleetRunner:
    """Runs one stage against every node and records the outcome per node.

    Nodes are submitted in declaration order, so ``parallelism=1`` runs them
    one at a time. A node's failure never interrupts the other running nodes;
    with ``fail_fast`` the nodes not yet started are cancelled.
    """

    def __init__(self, state: FleetState, parallelism: int = 5, fail_fast: bool = True,
                 resume: bool = False, on_change: Optional[Callable[[FleetState], None]] = None):
        self.state = state
        self.parallelism = max(1, parallelism)
        self.fail_fast = fail_fast
        self.resume = resume
        self._on_change = on_change
        self._lock = threading.Lock()

    def _mark(self, node: Node, stage: str, state: NodeState, error: Optional[str] = None) -> None:
        with self._lock:
            self.state.mark(node.id, stage, state, error)
            if self._on_change:
                self._on_change(self.state)

    def _run_one(self, stage: str, node: Node, action: Callable[[Node], Any]) -> Any:
        self._mark(node, stage, NodeState.PARTIAL)
        result = action(node)
        self._mark(node, stage, NodeState.CONVERGED)
        return result

    def run(self, stage: str, nodes: Sequence[Node], action: Callable[[Node], Any]) -> Dict[str, Any]:
        """Run action on every node.

        Returns:
            Dict mapping node id to the action's result for nodes that ran

        Raises:
            StageFailed: If the action failed (or was cancelled) on any node
        """
        pending = []
        for node in nodes:
            if self.resume and self.state.stage_state(node.id, stage) == NodeState.CONVERGED:
                logger.info(f"⏭️  {stage}: {node.id} already converged, skipping")
                continue
            pending.append(node)

        if not pending:
            return {}

        logger.info(f"🚀 {stage}: {len(pending)} node(s), up to {self.parallelism} at a time")
        start_time = time.time()
        results: Dict[str, Any] = {}
        failures: Dict[str, str] = {}

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix=stage) as executor:
            future_to_node = {executor.submit(self._run_one, stage, node, action): node for node in pending}

            for future in as_completed(future_to_node):
                node = future_to_node[future]
                if future.cancelled():
                    continue
                try:
                    results[node.id] = future.result()
                except Exception as e:
                    failures[node.id] = str(e)
                    self._mark(node, stage, NodeState.FAILED, str(e))
                    logger.error(f"❌ {stage} failed on {node.id} ({node.address}): {e}")
                    if self.fail_fast:
                        for other in future_to_node:
                            other.cancel()

            for future, node in future_to_node.items():
                if future.cancelled():
                    failures.setdefault(node.id, "cancelled after an earlier failure")

        duration = time.time() - start_time
        if failures:
            raise StageFailed(stage, failures)
        logger.info(f"✅ {stage} completed on {len(results)} node(s) in {duration:.1f}s")
        return results
