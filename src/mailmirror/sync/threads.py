"""Reference-header threading.

Messages are grouped purely by their Message-ID / In-Reply-To / References
graph: every header a message mentions is a node, each message links its own
Message-ID to all headers it references, and every connected component that
contains at least one message is a thread. Subjects are never compared.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from mailmirror.models.mail import ThreadableMessage, ThreadGroup
from mailmirror.utils.ids import thread_id_for_root


class _UnionFind:
    """Union-find over string keys with path halving."""

    def __init__(self) -> None:
        self._parent: dict[str, str] = {}

    def add(self, key: str) -> None:
        self._parent.setdefault(key, key)

    def find(self, key: str) -> str:
        parent = self._parent
        while parent[key] != key:
            parent[key] = parent[parent[key]]
            key = parent[key]
        return key

    def union(self, a: str, b: str) -> None:
        self.add(a)
        self.add(b)
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return
        # Smaller key becomes the root so the structure is order independent.
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a


def message_nodes(msg: ThreadableMessage) -> list[str]:
    """Return every header node a message contributes to the graph."""
    nodes = [msg.message_id]
    if msg.in_reply_to:
        nodes.append(msg.in_reply_to)
    nodes.extend(msg.references)
    return list(dict.fromkeys(nodes))


def build_threads(
    threadables: Iterable[ThreadableMessage],
    *,
    known_threads: Mapping[str, str] | None = None,
) -> list[ThreadGroup]:
    """Group messages into threads by reference headers.

    Args:
        threadables: Messages of the current sync pass.
        known_threads: Header -> thread id for messages already persisted.
            A component touching any of these headers keeps the existing
            thread id (the smallest one if it touches several).

    Returns:
        Thread groups in order of first appearance of their messages.
    """
    known = known_threads or {}
    uf = _UnionFind()
    messages: dict[str, ThreadableMessage] = {}

    for msg in threadables:
        if msg.id in messages:
            continue
        messages[msg.id] = msg
        nodes = message_nodes(msg)
        uf.add(nodes[0])
        for node in nodes[1:]:
            uf.union(nodes[0], node)

    members: dict[str, list[str]] = {}
    nodes_by_root: dict[str, set[str]] = {}
    for msg in messages.values():
        root = uf.find(msg.message_id)
        members.setdefault(root, []).append(msg.id)
        bucket = nodes_by_root.setdefault(root, set())
        bucket.update(message_nodes(msg))

    # Components attached to the same persisted thread through different
    # headers are emitted as one group.
    by_thread: dict[str, list[str]] = {}
    for root, message_ids in members.items():
        existing = sorted({known[n] for n in nodes_by_root[root] if n in known})
        # The root is the smallest node of its component by construction.
        thread_id = existing[0] if existing else thread_id_for_root(root)
        by_thread.setdefault(thread_id, []).extend(message_ids)

    return [
        ThreadGroup(thread_id=thread_id, message_ids=tuple(message_ids))
        for thread_id, message_ids in by_thread.items()
    ]
