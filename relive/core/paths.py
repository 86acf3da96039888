"""
Reference Paths

Diagnostic chains describing how an instance was reached during a pass,
rooted at a static field or a watched instance.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ReferencePath:
    """
    Immutable node: "value discovered via ``member`` of ``parent``".

    Roots are interned by :class:`ReferencePathCache`; children are interned
    per parent, so equal chains share nodes.
    """

    __slots__ = ("member", "parent", "depth", "_children")

    def __init__(self, member: Any, parent: Optional["ReferencePath"] = None):
        self.member = member
        self.parent = parent
        self.depth = 0 if parent is None else parent.depth + 1
        self._children: Dict[Any, ReferencePath] = {}

    @property
    def root(self) -> "ReferencePath":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def child(self, member: Any) -> "ReferencePath":
        """Get the interned child path for ``member``."""
        key = _member_key(member)
        node = self._children.get(key)
        if node is None:
            node = ReferencePath(member, self)
            self._children[key] = node
        return node

    def __getitem__(self, member: Any) -> "ReferencePath":
        return self.child(member)

    def members(self) -> List[Any]:
        """Members from the root down to this node."""
        chain = []
        node: Optional[ReferencePath] = self
        while node is not None:
            chain.append(node.member)
            node = node.parent
        chain.reverse()
        return chain

    def __str__(self) -> str:
        return " -> ".join(describe_member(m) for m in self.members())

    def __repr__(self) -> str:
        return f"ReferencePath({self})"


class ReferencePathCache:
    """Per-engine interning of root paths, cleared at the end of every pass."""

    def __init__(self):
        self._roots: Dict[Any, ReferencePath] = {}

    def get_root(self, member: Any) -> ReferencePath:
        key = _member_key(member)
        root = self._roots.get(key)
        if root is None:
            root = ReferencePath(member)
            self._roots[key] = root
        return root

    def clear(self) -> None:
        self._roots.clear()

    def __len__(self) -> int:
        return len(self._roots)


def describe_member(member: Any) -> str:
    """Display name for a field, type or element marker."""
    if member is None:
        return "?"
    if isinstance(member, str):
        return member
    display = getattr(member, "display_name", None)
    if display is not None:
        return display
    if isinstance(member, type):
        return f"{member.__module__}.{member.__qualname__}"
    return repr(member)


def _member_key(member: Any) -> Any:
    # Fields are value objects, everything else is keyed by identity
    try:
        hash(member)
    except TypeError:
        return id(member)
    return member
