"""Failure-injecting node stores for testing.

These wrap a real NodeRepository (backed by in-memory SQLite) and make
selected calls fail on demand, so tests can exercise retry and recovery
paths without mocking SQLite itself.

Design principles:
- Never mock SQLite; always delegate to a real repository
- Failures are scripted and counted, so tests can assert exact behaviour
- Deterministic: the same script always fails the same calls
"""
import time
from typing import List, Optional, Sequence

from notetree_mcp.exceptions import StorageError, TransientStoreError
from notetree_mcp.models.schema import Node
from notetree_mcp.storage.base import NodeStore


class FlakyStore(NodeStore):
    """Delegating store whose writes fail according to a script.

    Args:
        inner: The real store.
        put_many_failures: How many upcoming ``put_many`` calls raise
            TransientStoreError before calls go through again.
        fail_put_many_forever: Every ``put_many`` raises (transient unless
            ``permanent`` is set).
        permanent: Raise StorageError instead of TransientStoreError.
    """

    def __init__(
        self,
        inner: NodeStore,
        put_many_failures: int = 0,
        fail_put_many_forever: bool = False,
        permanent: bool = False,
    ):
        self.inner = inner
        self.put_many_failures = put_many_failures
        self.fail_put_many_forever = fail_put_many_forever
        self.permanent = permanent
        self.fail_get_siblings = False
        self.put_many_calls = 0
        self.put_many_failed = 0
        self.put_calls = 0

    def _error(self, operation: str) -> StorageError:
        if self.permanent:
            return StorageError(f"injected failure in {operation}", operation=operation)
        return TransientStoreError(f"injected failure in {operation}", operation=operation)

    def get(self, id: str) -> Optional[Node]:
        return self.inner.get(id)

    def get_siblings(self, project_id: str, parent_id: Optional[str]) -> List[Node]:
        if self.fail_get_siblings:
            raise self._error("get_siblings")
        return self.inner.get_siblings(project_id, parent_id)

    def put(self, node: Node) -> Node:
        self.put_calls += 1
        return self.inner.put(node)

    def put_many(self, nodes: Sequence[Node]) -> int:
        self.put_many_calls += 1
        if self.fail_put_many_forever or self.put_many_failures > 0:
            self.put_many_failures = max(0, self.put_many_failures - 1)
            self.put_many_failed += 1
            raise self._error("put_many")
        return self.inner.put_many(nodes)

    def delete_many(self, ids: Sequence[str]) -> int:
        return self.inner.delete_many(ids)

    def get_descendant_ids(self, id: str) -> List[str]:
        return self.inner.get_descendant_ids(id)

    def list_project(self, project_id: str) -> List[Node]:
        return self.inner.list_project(project_id)


class CountingStore(FlakyStore):
    """Never fails; only counts writes (for idempotence checks)."""

    def __init__(self, inner: NodeStore):
        super().__init__(inner)
        self.nodes_written = 0

    def put_many(self, nodes: Sequence[Node]) -> int:
        self.nodes_written += len(nodes)
        return super().put_many(nodes)


class SlowPutStore(FlakyStore):
    """Single-node writes of nodes whose content is in ``slow`` take ``delay`` seconds."""

    def __init__(self, inner: NodeStore, slow: Sequence[str], delay: float):
        super().__init__(inner)
        self.slow = set(slow)
        self.delay = delay

    def put(self, node: Node) -> Node:
        if node.content in self.slow:
            time.sleep(self.delay)
        return super().put(node)


class BrokenPutStore(FlakyStore):
    """Single-node writes raise an error the store contract does not allow."""

    def put(self, node: Node) -> Node:
        raise RuntimeError(f"driver crashed writing {node.id}")
