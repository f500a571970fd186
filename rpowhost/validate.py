"""Checking lookup proofs produced by :class:`rpowhost.dbproof.ProofDB`.

A party that remembers only the root hash and depth of the tree can use
these functions to confirm whether a key was present.  When the key was
absent and was inserted, they also compute the tree's new root hash and
depth, following the same insertion and splitting rules as the database.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import NamedTuple

from .dbproof import HASHSIZE, NODEKEYS, node_data_hash

__all__ = ["ProofError", "Validation", "check_proof", "validate_db_operation"]

_HEADER = struct.Struct(">II")


class ProofError(ValueError):
    """The proof does not establish the claimed result."""


@dataclass(frozen=True)
class Validation:
    """Result of a validated lookup, with the tree's hash and depth afterwards."""

    found: bool
    treehash: bytes
    maxdepth: int


class _Change(NamedTuple):
    hash: bytes
    split: tuple[bytes, bytes] | None  # split key, hash of the new right node


def _split_hashes(keys: list[bytes], hashes: list[bytes], isleaf: bool) -> _Change:
    """Hash a grown node, splitting it in two if it has overflowed."""
    if len(keys) <= NODEKEYS:
        return _Change(node_data_hash(keys, hashes, isleaf), None)
    half = NODEKEYS // 2
    left = node_data_hash(keys[:half], hashes[: half + 1], isleaf)
    right = node_data_hash(keys[half + 1:], hashes[half + 1:], isleaf)
    return _Change(left, (keys[half], right))


def _slices(data: bytes, start: int, count: int) -> list[bytes]:
    return [data[start + i * HASHSIZE:start + (i + 1) * HASHSIZE] for i in range(count)]


def _validate_node(
    proof: bytes,
    offset: int,
    expected: bytes,
    key: bytes,
    depth: int,
    maxdepth: int,
    insert: bool,
) -> tuple[bool, _Change | None]:
    isleaf = depth + 1 == maxdepth
    remaining = len(proof) - offset
    if remaining < _HEADER.size:
        raise ProofError(f"proof is truncated at depth {depth}")
    nkeys, keyind = _HEADER.unpack_from(proof, offset)
    if nkeys > NODEKEYS:
        raise ProofError(f"node at depth {depth} claims {nkeys} keys")
    nodesize = _HEADER.size + nkeys * HASHSIZE
    if not isleaf:
        nodesize += (nkeys + 1) * HASHSIZE
    if remaining < nodesize or (isleaf and remaining != nodesize):
        raise ProofError(f"node at depth {depth} has the wrong length")
    if keyind > nkeys:
        raise ProofError(f"key index {keyind} out of range at depth {depth}")

    start = offset + _HEADER.size
    keys = _slices(proof, start, nkeys)
    hashes = [] if isleaf else _slices(proof, start + nkeys * HASHSIZE, nkeys + 1)

    if node_data_hash(keys, hashes, isleaf) != expected:
        raise ProofError(f"node at depth {depth} does not match its hash")

    if keyind < nkeys:
        if key == keys[keyind]:
            return True, None
        if key > keys[keyind]:
            raise ProofError(f"key lies above the indicated slot at depth {depth}")
    if keyind > 0 and key <= keys[keyind - 1]:
        raise ProofError(f"key lies below the indicated slot at depth {depth}")

    if isleaf:
        if not insert:
            return False, None
        keys.insert(keyind, key)
        return False, _split_hashes(keys, hashes, isleaf)

    found, change = _validate_node(
        proof, offset + nodesize, hashes[keyind], key, depth + 1, maxdepth, insert
    )
    if found or change is None:
        return found, None
    hashes[keyind] = change.hash
    if change.split is None:
        return False, _Change(node_data_hash(keys, hashes, isleaf), None)
    split_key, new_hash = change.split
    keys.insert(keyind, split_key)
    hashes.insert(keyind + 1, new_hash)
    return False, _split_hashes(keys, hashes, isleaf)


def validate_db_operation(
    treehash: bytes, proof: bytes, maxdepth: int, key: bytes, set: bool
) -> Validation:
    """Check ``proof`` for a lookup of ``key`` against the known tree state.

    Returns whether the key was found, and the root hash and depth the tree
    has afterwards (changed only when ``set`` is true and the key was absent).
    Raises :class:`ProofError` if the proof is not valid.
    """
    treehash = bytes(treehash)
    key = bytes(key)
    if len(key) != HASHSIZE:
        raise ValueError(f"key must be {HASHSIZE} bytes, got {len(key)}")
    if maxdepth < 1:
        raise ValueError(f"tree depth must be positive, got {maxdepth}")

    found, change = _validate_node(bytes(proof), 0, treehash, key, 0, maxdepth, set)
    if change is None:
        return Validation(found, treehash, maxdepth)
    if change.split is None:
        return Validation(False, change.hash, maxdepth)
    # The root split: a new top node holds the split key over the two halves.
    split_key, new_hash = change.split
    top = node_data_hash([split_key], [change.hash, new_hash], False)
    return Validation(False, top, maxdepth + 1)


def check_proof(
    proof: bytes,
    treehash: bytes,
    maxdepth: int,
    key: bytes,
    should_be_found: bool,
    set: bool,
) -> Validation:
    """Validate ``proof`` and require that the key's presence is as expected."""
    result = validate_db_operation(treehash, proof, maxdepth, key, set)
    if result.found != bool(should_be_found):
        raise ProofError(
            f"key was {'found' if result.found else 'not found'}, "
            f"expected {'found' if should_be_found else 'not found'}"
        )
    return result