"""
Immutable rooted bifurcating trees.

Nodes are small integers indexing flat arrays (parent, left child, right
child, branch length), following the layout tskit uses for its trees.
Edits never modify a tree in place: they return a new tree in which every
existing node keeps its id, so per-node caches keyed by id stay meaningful
across edits.
"""

import numpy as np
import tskit
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

NULL = -1


class Tree:
    """
    Rooted bifurcating tree with named leaves and branch lengths.

    The root's branch length is ignored; for likelihood purposes the tree is
    unrooted and the two edges below the root form a single edge.
    """

    def __init__(
        self,
        parent: Sequence[int],
        left_child: Sequence[int],
        right_child: Sequence[int],
        branch_length: Sequence[float],
        names: Sequence[Optional[str]]
    ):
        self._parent = np.array(parent, dtype=int)
        self._left = np.array(left_child, dtype=int)
        self._right = np.array(right_child, dtype=int)
        self._length = np.array(branch_length, dtype=float)
        self._names = list(names)
        for array in (self._parent, self._left, self._right, self._length):
            array.flags.writeable = False

        n = len(self._parent)
        if not (len(self._left) == len(self._right) == len(self._length) == len(self._names) == n):
            raise ValueError("Node arrays must all have the same length")

        roots = np.flatnonzero(self._parent == NULL)
        if len(roots) != 1:
            raise ValueError(f"Tree must have exactly one root, found {len(roots)}")
        self._root = int(roots[0])

        if np.any(self._length < 0) or not np.all(np.isfinite(self._length)):
            raise ValueError("Branch lengths must be finite and non-negative")

        self._leaf_index: Dict[str, int] = {}
        for u in range(n):
            has_left = self._left[u] != NULL
            has_right = self._right[u] != NULL
            if has_left != has_right:
                raise ValueError(f"Node {u} has a single child; trees must be bifurcating")
            if not has_left:
                name = self._names[u]
                if not name:
                    raise ValueError(f"Leaf {u} has no name")
                if name in self._leaf_index:
                    raise ValueError(f"Duplicate leaf name: {name}")
                self._leaf_index[name] = u

        self._preorder: Optional[Tuple[int, ...]] = None

    # Construction

    @classmethod
    def from_nested(cls, nested) -> "Tree":
        """
        Build a tree from nested tuples.

        A leaf is ``(name, length)``; an internal node is
        ``((left, right), length)``. The root may be given without a length.

        Example:
            Tree.from_nested((((("A", 0.1), ("B", 0.2)), 0.05), ("C", 0.3)))
        """
        if not (isinstance(nested, tuple) and len(nested) == 2 and isinstance(nested[1], (int, float))):
            nested = (nested, 0.0)

        parent, left, right, length, names = [], [], [], [], []
        # (nested, parent id, is_left)
        stack = [(nested, NULL, False)]
        while stack:
            (node, node_length), p, is_left = stack.pop()
            u = len(parent)
            parent.append(p)
            left.append(NULL)
            right.append(NULL)
            length.append(float(node_length))
            if p != NULL:
                if is_left:
                    left[p] = u
                else:
                    right[p] = u
            if isinstance(node, str):
                names.append(node)
            else:
                if len(node) != 2:
                    raise ValueError("Internal nodes must have exactly two children")
                names.append(None)
                stack.append((node[1], u, False))
                stack.append((node[0], u, True))

        return cls(parent, left, right, length, names)

    @classmethod
    def from_tskit(cls, tstree: tskit.Tree, names: Optional[Sequence[str]] = None) -> "Tree":
        """
        Convert a tskit.Tree with a single binary root.

        Args:
            tstree: A tskit Tree
            names: Leaf names, in the order of the tree sequence's samples
                (default: "n0", "n1", ...)

        Returns:
            Tree with branch lengths tree.branch_length(u)
        """
        if tstree.num_roots != 1:
            raise ValueError(f"Expected a single root, found {tstree.num_roots}")

        samples = list(tstree.tree_sequence.samples())
        if names is None:
            names = [f"n{i}" for i in range(len(samples))]
        if len(names) != len(samples):
            raise ValueError(f"Got {len(names)} names for {len(samples)} samples")
        name_of = dict(zip(samples, names))

        order = list(tstree.nodes(order="preorder"))
        index = {u: i for i, u in enumerate(order)}
        n = len(order)
        parent = [NULL] * n
        left = [NULL] * n
        right = [NULL] * n
        length = [0.0] * n
        node_names: List[Optional[str]] = [None] * n

        for u in order:
            i = index[u]
            children = tstree.children(u)
            if len(children) == 2:
                left[i], right[i] = index[children[0]], index[children[1]]
            elif len(children) == 0:
                node_names[i] = name_of[u]
            else:
                raise ValueError(f"Node {u} has {len(children)} children; trees must be bifurcating")
            if u != tstree.root:
                parent[i] = index[tstree.parent(u)]
                length[i] = tstree.branch_length(u)

        return cls(parent, left, right, length, node_names)

    # Structure

    @property
    def root(self) -> int:
        return self._root

    @property
    def num_nodes(self) -> int:
        return len(self._parent)

    @property
    def num_leaves(self) -> int:
        return len(self._leaf_index)

    def parent(self, u: int) -> int:
        return int(self._parent[u])

    def children(self, u: int) -> Tuple[int, ...]:
        if self._left[u] == NULL:
            return ()
        return int(self._left[u]), int(self._right[u])

    def sibling(self, u: int) -> int:
        p = self._parent[u]
        if p == NULL:
            return NULL
        return int(self._right[p] if self._left[p] == u else self._left[p])

    def is_leaf(self, u: int) -> bool:
        return self._left[u] == NULL

    def is_root(self, u: int) -> bool:
        return u == self._root

    def branch_length(self, u: int) -> float:
        return float(self._length[u])

    def name(self, u: int) -> Optional[str]:
        return self._names[u]

    def leaf(self, name: str) -> int:
        """Node id of the leaf with the given name."""
        return self._leaf_index[name]

    @property
    def leaf_names(self) -> List[str]:
        return [self._names[u] for u in self.nodes() if self.is_leaf(u)]

    def leaves(self) -> List[int]:
        return [u for u in self.nodes() if self.is_leaf(u)]

    def nodes(self, order: str = "preorder") -> Iterator[int]:
        """
        Iterate over node ids.

        Args:
            order: "preorder" (parents before children, left to right) or
                "postorder" (children before parents)
        """
        if self._preorder is None:
            result = []
            stack = [self._root]
            while stack:
                u = stack.pop()
                result.append(u)
                if self._left[u] != NULL:
                    stack.append(int(self._right[u]))
                    stack.append(int(self._left[u]))
            self._preorder = tuple(result)

        if order == "preorder":
            return iter(self._preorder)
        elif order == "postorder":
            return iter(self._postorder())
        else:
            raise ValueError(f"Unknown traversal order: {order}")

    def _postorder(self) -> List[int]:
        result = []
        stack = [self._root]
        while stack:
            u = stack.pop()
            result.append(u)
            if self._left[u] != NULL:
                stack.append(int(self._left[u]))
                stack.append(int(self._right[u]))
        result.reverse()
        return result

    def edges(self) -> List[int]:
        """Non-root nodes in preorder; each identifies the edge above it."""
        return [u for u in self.nodes() if u != self._root]

    @property
    def total_branch_length(self) -> float:
        return float(sum(self._length[u] for u in self.edges()))

    # Functional edits

    def with_branch_length(self, u: int, length: float) -> "Tree":
        """Copy of this tree with the branch above `u` set to `length`."""
        if u == self._root:
            raise ValueError("The root has no branch")
        lengths = self._length.copy()
        lengths[u] = length
        return Tree(self._parent, self._left, self._right, lengths, self._names)

    @property
    def branch_lengths(self) -> np.ndarray:
        return self._length.copy()

    def with_branch_lengths(self, lengths: Sequence[float]) -> "Tree":
        """Copy of this tree with every branch length replaced."""
        lengths = np.array(lengths, dtype=float)
        if lengths.shape != self._length.shape:
            raise ValueError(f"Expected {self.num_nodes} branch lengths, got {lengths.size}")
        return Tree(self._parent, self._left, self._right, lengths, self._names)

    def attach(
        self,
        edge: int,
        name: str,
        distal: float,
        pendant: float
    ) -> Tuple["Tree", int, int]:
        """
        Attach a new leaf on the edge above `edge`.

                  parent
                    |  d - distal
            new ----+---- new leaf (pendant)
                    |  distal
                   edge

        Args:
            edge: Node below the insertion edge
            name: Name of the new leaf
            distal: Distance from the attachment point down to `edge`
            pendant: Length of the new leaf's branch

        Returns:
            (new tree, id of the new internal node, id of the new leaf)
        """
        if edge == self._root:
            raise ValueError("Cannot attach above the root")
        if name in self._leaf_index:
            raise ValueError(f"Leaf {name} is already in the tree")
        d = self.branch_length(edge)
        if not 0 <= distal <= d:
            raise ValueError(f"Distal offset {distal} outside [0, {d}]")
        if pendant < 0:
            raise ValueError(f"Pendant length must be non-negative, got {pendant}")

        n = self.num_nodes
        junction, leaf = n, n + 1
        p = int(self._parent[edge])

        parent = np.append(self._parent, [p, junction])
        left = np.append(self._left, [edge, NULL])
        right = np.append(self._right, [leaf, NULL])
        lengths = np.append(self._length, [d - distal, pendant])
        names = self._names + [None, name]

        if left[p] == edge:
            left[p] = junction
        else:
            right[p] = junction
        parent[edge] = junction
        lengths[edge] = distal

        return Tree(parent, left, right, lengths, names), junction, leaf

    def as_newick(self, precision: int = 6) -> str:
        text: Dict[int, str] = {}
        for u in self.nodes(order="postorder"):
            if self.is_leaf(u):
                label = self._names[u]
            else:
                a, b = self.children(u)
                label = f"({text.pop(a)},{text.pop(b)})"
            if u != self._root:
                label = f"{label}:{self._length[u]:.{precision}f}"
            text[u] = label
        return text[self._root] + ";"

    def __repr__(self) -> str:
        return f"Tree(num_leaves={self.num_leaves}, num_nodes={self.num_nodes})"
