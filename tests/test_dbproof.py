import hashlib
import os
import struct

import pytest

from rpowhost.dbproof import (
    HASHSIZE,
    INITIAL_DEPTH,
    INNER_NODE_SIZE,
    LEAF_NODE_SIZE,
    NODEKEYS,
    ProofDB,
    empty_tree_hash,
    node_data_hash,
)


def _key(i: int) -> bytes:
    return i.to_bytes(HASHSIZE, "big")


def _hkey(i: int) -> bytes:
    return hashlib.sha1(str(i).encode()).digest()


def _proof_nodes(proof: bytes, depth: int):
    offset = 0
    for level in range(depth):
        isleaf = level == depth - 1
        nkeys, keyind = struct.unpack_from(">II", proof, offset)
        offset += 8
        count = nkeys if isleaf else 2 * nkeys + 1
        hashes = [
            proof[offset + i * HASHSIZE:offset + (i + 1) * HASHSIZE] for i in range(count)
        ]
        offset += count * HASHSIZE
        yield nkeys, keyind, hashes[:nkeys], hashes[nkeys:]
    assert offset == len(proof)


@pytest.fixture
def db(tmp_path):
    with ProofDB.open(tmp_path / "rpow000.db") as opened:
        yield opened


def test_leaf_split_appends_one_leaf_record(tmp_path, db):
    results = [db.test_and_set(_key(i)) for i in range(NODEKEYS + 1)]
    assert all(result.found is False for result in results)
    assert db.test(_key(NODEKEYS)).found is True
    assert db.depth == INITIAL_DEPTH
    assert os.path.getsize(tmp_path / "rpow000.db.vals") == 3 * 2024
    assert os.path.getsize(tmp_path / "rpow000.db") == 2 * 4472


def test_empty_leaf_hash_is_hash_of_zero_count():
    assert node_data_hash([], [], True) == hashlib.sha1(b"\0\0\0\0").digest()


def test_inner_node_hash_requires_one_more_child_hash():
    with pytest.raises(ValueError):
        node_data_hash([_key(1)], [_key(2)], False)


def test_new_database_layout(tmp_path, db):
    assert db.created is True
    assert db.depth == INITIAL_DEPTH
    assert os.path.getsize(tmp_path / "rpow000.db") == 2 * INNER_NODE_SIZE
    assert os.path.getsize(tmp_path / "rpow000.db.vals") == 2 * LEAF_NODE_SIZE
    assert db.check() is True
    assert list(db.keys()) == []


def test_lookup_in_empty_tree(db):
    result = db.test(_key(7))
    assert result.found is False
    assert result.root_hash == empty_tree_hash()
    expected = (
        struct.pack(">II", 0, 0)
        + node_data_hash([], [], True)
        + struct.pack(">II", 0, 0)
    )
    assert result.proof == expected


def test_lookup_without_set_changes_nothing(tmp_path, db):
    db.test(_key(3))
    assert list(db.keys()) == []
    assert db.test(_key(3)).found is False
    assert os.path.getsize(tmp_path / "rpow000.db.vals") == 2 * LEAF_NODE_SIZE


def test_insert_then_found(db):
    first = db.test_and_set(_key(5))
    assert first.found is False
    assert first.root_hash != empty_tree_hash()
    second = db.test_and_set(_key(5))
    assert second.found is True
    assert second.root_hash == first.root_hash
    assert db.test(_key(5)).found is True


def test_keys_are_sorted(db):
    values = [_hkey(i) for i in range(30)]
    for value in values:
        db.test_and_set(value)
    assert list(db.keys()) == sorted(values)
    assert db.check() is True


def test_proof_records_insertion_point(db):
    for i in (10, 20, 30):
        db.test_and_set(_key(i))
    result = db.test(_key(25))
    nodes = list(_proof_nodes(result.proof, db.depth))
    leaf_nkeys, leaf_keyind, leaf_keys, _ = nodes[-1]
    assert leaf_nkeys == 3
    assert leaf_keyind == 2
    assert leaf_keys == [_key(10), _key(20), _key(30)]


def test_root_hash_matches_proof_root(db):
    for i in range(12):
        db.test_and_set(_hkey(i))
    result = db.test(_hkey(100))
    nkeys, _, keys, child_hashes = next(_proof_nodes(result.proof, db.depth))
    assert result.root_hash == node_data_hash(keys, child_hashes, False)


def test_found_key_proof_stops_at_node(db):
    db.test_and_set(_key(4))
    result = db.test(_key(4))
    assert result.found is True
    nodes = list(_proof_nodes(result.proof, db.depth))
    assert nodes[-1][2][nodes[-1][1]] == _key(4)


def test_bad_key_length(db):
    with pytest.raises(ValueError):
        db.test(b"short")


def test_leaf_split(db):
    for i in range(NODEKEYS + 1):
        db.test_and_set(_key(i))
    assert db.depth == INITIAL_DEPTH
    root_nkeys, _, root_keys, _ = next(_proof_nodes(db.test(_key(0)).proof, db.depth))
    assert root_nkeys == 1
    assert root_keys == [_key(NODEKEYS // 2)]
    assert list(db.keys()) == [_key(i) for i in range(NODEKEYS + 1)]
    assert db.check() is True


def test_reopen_keeps_contents(tmp_path):
    path = tmp_path / "rpow001.db"
    values = [_hkey(i) for i in range(150)]
    with ProofDB.open(path) as first:
        for value in values:
            last = first.test_and_set(value)
    with ProofDB.open(path) as second:
        assert second.created is False
        assert list(second.keys()) == sorted(values)
        assert second.test(values[0]).root_hash == last.root_hash
        assert second.check() is True


def test_corruption_detected(tmp_path):
    path = tmp_path / "rpow002.db"
    with ProofDB.open(path) as db:
        for i in range(5):
            db.test_and_set(_key(i + 1))
    with open(str(path) + ".vals", "r+b") as leaf:
        leaf.seek(LEAF_NODE_SIZE + 4)
        leaf.write(b"\xff")
    with ProofDB.open(path) as db:
        assert db.check() is False


def test_tree_grows_a_level(db):
    count = 0
    while db.depth == INITIAL_DEPTH:
        db.test_and_set(_key(count))
        count += 1
        assert count < 20000
    assert db.depth == INITIAL_DEPTH + 1
    assert db.check() is True
    assert list(db.keys()) == [_key(i) for i in range(count)]
    root_nkeys = next(_proof_nodes(db.test(_key(0)).proof, db.depth))[0]
    assert root_nkeys == 1