"""A B-tree of fixed-size hashes kept on disk, producing proofs of each lookup.

The tree is kept in two files: ``name`` holds the inner nodes and
``name.vals`` the leaves.  Every lookup returns a compact record of the
nodes it visited, from which a remote party that knows only the root hash
can confirm the answer and compute the new root hash after an insertion.
"""

from __future__ import annotations

import hashlib
import os
import struct
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Sequence

__all__ = [
    "HASHSIZE",
    "INITIAL_DEPTH",
    "INNER_NODE_SIZE",
    "LEAF_NODE_SIZE",
    "MAXDEPTH",
    "NODEKEYS",
    "ProofDB",
    "ProofResult",
    "empty_tree_hash",
    "node_data_hash",
]

#: Size of every key stored in the tree.
HASHSIZE = 20
#: Maximum number of keys in one node; always even.
NODEKEYS = 100
#: Deepest tree allowed.
MAXDEPTH = 6
#: Depth of a freshly created tree: one inner root over one leaf.
INITIAL_DEPTH = 2

_COUNT = struct.Struct(">I")
_PROOF_HEADER = struct.Struct(">II")
_KEYS_BYTES = (NODEKEYS + 1) * HASHSIZE
_CHILD_HASH_BYTES = (NODEKEYS + 2) * HASHSIZE
_CHILDREN = struct.Struct(f">{NODEKEYS + 2}I")
_CHILDREN_OFFSET = _COUNT.size + _KEYS_BYTES + _CHILD_HASH_BYTES

#: Bytes taken by one leaf record in the ``.vals`` file.
LEAF_NODE_SIZE = _COUNT.size + _KEYS_BYTES
#: Bytes taken by one inner-node record in the main file.
INNER_NODE_SIZE = _CHILDREN_OFFSET + _CHILDREN.size


def node_data_hash(
    keys: Sequence[bytes], child_hashes: Sequence[bytes], isleaf: bool
) -> bytes:
    """Hash a node's key count, its keys and, for inner nodes, its child hashes."""
    if not isleaf and len(child_hashes) != len(keys) + 1:
        raise ValueError(
            f"inner node with {len(keys)} keys needs {len(keys) + 1} child hashes, "
            f"got {len(child_hashes)}"
        )
    h = hashlib.sha1(_COUNT.pack(len(keys)))
    for key in keys:
        h.update(key)
    if not isleaf:
        for child_hash in child_hashes:
            h.update(child_hash)
    return h.digest()[:HASHSIZE]


def empty_tree_hash() -> bytes:
    """Return the root hash of a newly created, empty tree."""
    return node_data_hash([], [node_data_hash([], [], True)], False)


@dataclass
class ProofResult:
    """Outcome of one lookup: whether the key was present, and the proof."""

    found: bool
    proof: bytes
    root_hash: bytes


@dataclass
class _Node:
    keys: list[bytes] = field(default_factory=list)
    child_hashes: list[bytes] = field(default_factory=list)
    children: list[int] = field(default_factory=list)

    def hash(self, isleaf: bool) -> bytes:
        return node_data_hash(self.keys, self.child_hashes, isleaf)

    def to_bytes(self, isleaf: bool) -> bytes:
        keys = b"".join(self.keys).ljust(_KEYS_BYTES, b"\0")
        record = _COUNT.pack(len(self.keys)) + keys
        if isleaf:
            return record
        hashes = b"".join(self.child_hashes).ljust(_CHILD_HASH_BYTES, b"\0")
        children = self.children + [0] * (NODEKEYS + 2 - len(self.children))
        return record + hashes + _CHILDREN.pack(*children)

    @classmethod
    def from_bytes(cls, data: bytes, isleaf: bool) -> "_Node":
        (nkeys,) = _COUNT.unpack_from(data)
        if nkeys > NODEKEYS:
            raise ValueError(f"corrupt node: {nkeys} keys")
        start = _COUNT.size
        keys = [
            data[start + i * HASHSIZE:start + (i + 1) * HASHSIZE] for i in range(nkeys)
        ]
        if isleaf:
            return cls(keys)
        start += _KEYS_BYTES
        hashes = [
            data[start + i * HASHSIZE:start + (i + 1) * HASHSIZE]
            for i in range(nkeys + 1)
        ]
        children = list(_CHILDREN.unpack_from(data, _CHILDREN_OFFSET)[: nkeys + 1])
        return cls(keys, hashes, children)

    def proof_record(self, keyind: int, isleaf: bool) -> bytes:
        record = _PROOF_HEADER.pack(len(self.keys), keyind) + b"".join(self.keys)
        if not isleaf:
            record += b"".join(self.child_hashes)
        return record


@dataclass
class _Change:
    """How a node changed after an insertion below it."""

    hash: bytes
    split: tuple[bytes, int, bytes] | None = None  # split key, new node, its hash


def _open_or_create(path: str) -> BinaryIO:
    fd = os.open(path, os.O_RDWR | os.O_CREAT | getattr(os, "O_BINARY", 0), 0o666)
    return os.fdopen(fd, "r+b")


def _read_header(inner: BinaryIO) -> tuple[int, int]:
    inner.seek(0)
    data = inner.read(INNER_NODE_SIZE)
    if len(data) < INNER_NODE_SIZE:
        raise ValueError("database header is truncated")
    root, depth = struct.unpack_from(">2I", data, _CHILDREN_OFFSET)
    return root, depth


class ProofDB:
    """Disk-backed set of hashes that proves every lookup and insertion."""

    def __init__(
        self, inner_file: BinaryIO, leaf_file: BinaryIO, depth: int, root: int
    ) -> None:
        self.inner_file = inner_file
        self.leaf_file = leaf_file
        self.depth = depth
        self.root = root
        self.created = False

    @classmethod
    def open(cls, name: str | os.PathLike[str]) -> "ProofDB":
        """Open the database ``name``, creating it if it does not exist.

        The returned object's ``created`` attribute tells which happened.
        """
        name = os.fspath(name)
        leaf_name = name + ".vals"
        inner: BinaryIO | None
        try:
            inner = open(name, "r+b")
        except OSError:
            inner = None
        else:
            try:
                leaf = open(leaf_name, "r+b")
            except OSError:
                inner.close()
                inner = None
        if inner is not None:
            try:
                root, depth = _read_header(inner)
            except ValueError:
                inner.close()
                leaf.close()
                raise
            return cls(inner, leaf, depth, root)

        inner = _open_or_create(name)
        try:
            leaf = _open_or_create(leaf_name)
        except OSError:
            inner.close()
            raise
        db = cls(inner, leaf, INITIAL_DEPTH, 1)
        db._initialise()
        db.created = True
        return db

    def _initialise(self) -> None:
        empty_leaf = _Node()
        # Leaf block 0 is unused; block 1 is the first, empty leaf.
        self._write(0, empty_leaf, True)
        self._write(1, empty_leaf, True)
        self._write_header(1, INITIAL_DEPTH)
        root = _Node([], [empty_leaf.hash(True)], [1])
        self._write(1, root, False)
        self.depth = INITIAL_DEPTH
        self.root = 1
        self._flush()

    # -- record access --------------------------------------------------

    def _file(self, isleaf: bool) -> BinaryIO:
        return self.leaf_file if isleaf else self.inner_file

    @staticmethod
    def _size(isleaf: bool) -> int:
        return LEAF_NODE_SIZE if isleaf else INNER_NODE_SIZE

    def _read(self, pos: int, isleaf: bool) -> _Node:
        f = self._file(isleaf)
        size = self._size(isleaf)
        f.seek(pos * size)
        data = f.read(size)
        if len(data) < size:
            raise ValueError(f"node {pos} is missing or truncated")
        return _Node.from_bytes(data, isleaf)

    def _write(self, pos: int, node: _Node, isleaf: bool) -> None:
        f = self._file(isleaf)
        f.seek(pos * self._size(isleaf))
        f.write(node.to_bytes(isleaf))

    def _append(self, node: _Node, isleaf: bool) -> int:
        f = self._file(isleaf)
        pos = f.seek(0, os.SEEK_END) // self._size(isleaf)
        self._write(pos, node, isleaf)
        return pos

    def _write_header(self, root: int, depth: int) -> None:
        header = bytearray(INNER_NODE_SIZE)
        struct.pack_into(">2I", header, _CHILDREN_OFFSET, root, depth)
        self.inner_file.seek(0)
        self.inner_file.write(header)

    def _flush(self) -> None:
        self.inner_file.flush()
        self.leaf_file.flush()

    # -- lookup and insertion -------------------------------------------

    def test_and_maybe_set(self, key: bytes, set: bool) -> ProofResult:
        """Look ``key`` up, inserting it if absent and ``set`` is true."""
        key = bytes(key)
        if len(key) != HASHSIZE:
            raise ValueError(f"key must be {HASHSIZE} bytes, got {len(key)}")
        records: list[bytes] = []
        found, change = self._descend(self.root, 0, key, set, records)

        if change is None:
            root_hash = self._read(self.root, self.depth == 1).hash(self.depth == 1)
        elif change.split is None:
            root_hash = change.hash
            self._flush()
        else:
            # The old root filled up and split: grow the tree by one level.
            if self.depth >= MAXDEPTH:
                raise RuntimeError(f"tree depth would exceed {MAXDEPTH}")
            split_key, new_num, new_hash = change.split
            top = _Node([split_key], [change.hash, new_hash], [self.root, new_num])
            new_root = self._append(top, False)
            self.depth += 1
            self._write_header(new_root, self.depth)
            self.root = new_root
            root_hash = top.hash(False)
            self._flush()

        return ProofResult(found, b"".join(records), root_hash)

    def test(self, key: bytes) -> ProofResult:
        """Look ``key`` up without changing the tree."""
        return self.test_and_maybe_set(key, False)

    def test_and_set(self, key: bytes) -> ProofResult:
        """Look ``key`` up and insert it if it is absent."""
        return self.test_and_maybe_set(key, True)

    def _descend(
        self, pos: int, depth: int, key: bytes, insert: bool, records: list[bytes]
    ) -> tuple[bool, _Change | None]:
        isleaf = depth + 1 == self.depth
        node = self._read(pos, isleaf)
        keyind = bisect_left(node.keys, key)
        records.append(node.proof_record(keyind, isleaf))

        if keyind < len(node.keys) and node.keys[keyind] == key:
            return True, None

        if isleaf:
            if not insert:
                return False, None
            node.keys.insert(keyind, key)
        else:
            child = node.children[keyind]
            if child == 0:
                raise ValueError(f"inner node {pos} has no child {keyind}")
            found, change = self._descend(child, depth + 1, key, insert, records)
            if found or change is None:
                return found, None
            node.child_hashes[keyind] = change.hash
            if change.split is None:
                self._write(pos, node, isleaf)
                return False, _Change(node.hash(isleaf))
            split_key, new_num, new_hash = change.split
            node.keys.insert(keyind, split_key)
            node.child_hashes.insert(keyind + 1, new_hash)
            node.children.insert(keyind + 1, new_num)

        return False, self._store(pos, node, isleaf)

    def _store(self, pos: int, node: _Node, isleaf: bool) -> _Change:
        """Write a modified node back, splitting it in two if it overflowed."""
        if len(node.keys) <= NODEKEYS:
            self._write(pos, node, isleaf)
            return _Change(node.hash(isleaf))

        half = NODEKEYS // 2
        split_key = node.keys[half]
        right = _Node(
            node.keys[half + 1:], node.child_hashes[half + 1:], node.children[half + 1:]
        )
        left = _Node(
            node.keys[:half], node.child_hashes[: half + 1], node.children[: half + 1]
        )
        self._write(pos, left, isleaf)
        new_num = self._append(right, isleaf)
        return _Change(left.hash(isleaf), (split_key, new_num, right.hash(isleaf)))

    # -- inspection -------------------------------------------------------

    def check(self) -> bool:
        """Return whether every node is ordered and matches its parent's hash."""
        try:
            return self._check(self.root, 0) is not None
        except ValueError:
            return False

    def _check(self, pos: int, depth: int) -> bytes | None:
        isleaf = depth + 1 == self.depth
        node = self._read(pos, isleaf)
        if not isleaf:
            for child, expected in zip(node.children, node.child_hashes):
                if child == 0:
                    return None
                if self._check(child, depth + 1) != expected:
                    return None
        if any(a >= b for a, b in zip(node.keys, node.keys[1:])):
            return None
        return node.hash(isleaf)

    def keys(self) -> Iterator[bytes]:
        """Yield every stored key in ascending order."""
        yield from self._walk(self.root, 0)

    def _walk(self, pos: int, depth: int) -> Iterator[bytes]:
        isleaf = depth + 1 == self.depth
        node = self._read(pos, isleaf)
        if isleaf:
            yield from node.keys
            return
        for child, key in zip(node.children, node.keys):
            yield from self._walk(child, depth + 1)
            yield key
        yield from self._walk(node.children[-1], depth + 1)

    # -- lifetime ---------------------------------------------------------

    def close(self) -> None:
        """Close both database files."""
        self.leaf_file.close()
        self.inner_file.close()

    def __enter__(self) -> "ProofDB":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()