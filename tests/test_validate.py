import struct

import pytest

from rpowhost.dbproof import (
    HASHSIZE,
    INITIAL_DEPTH,
    NODEKEYS,
    ProofDB,
    empty_tree_hash,
    node_data_hash,
)
from rpowhost.validate import (
    ProofError,
    Validation,
    check_proof,
    validate_db_operation,
)


def _key(n: int) -> bytes:
    return n.to_bytes(HASHSIZE, "big")


@pytest.fixture
def db(tmp_path):
    with ProofDB.open(tmp_path / "test.db") as database:
        yield database


def _leaf_record(keys, keyind):
    return struct.pack(">II", len(keys), keyind) + b"".join(keys)


def test_lookup_in_empty_tree(db):
    result = db.test(_key(5))
    v = validate_db_operation(empty_tree_hash(), result.proof, INITIAL_DEPTH, _key(5), False)
    assert v == Validation(False, empty_tree_hash(), INITIAL_DEPTH)


def test_insert_updates_treehash(db):
    result = db.test_and_set(_key(7))
    v = check_proof(result.proof, empty_tree_hash(), INITIAL_DEPTH, _key(7), False, True)
    assert v.treehash == result.root_hash
    assert v.treehash != empty_tree_hash()
    assert v.maxdepth == INITIAL_DEPTH


def test_found_after_insert(db):
    first = db.test_and_set(_key(9))
    treehash = check_proof(
        first.proof, empty_tree_hash(), INITIAL_DEPTH, _key(9), False, True
    ).treehash
    second = db.test_and_set(_key(9))
    v = check_proof(second.proof, treehash, INITIAL_DEPTH, _key(9), True, True)
    assert v.found is True
    assert v.treehash == treehash


def test_lookup_without_set_keeps_hash(db):
    treehash = empty_tree_hash()
    for n in (3, 1, 2):
        result = db.test_and_set(_key(n))
        treehash = check_proof(result.proof, treehash, INITIAL_DEPTH, _key(n), False, True).treehash
    result = db.test(_key(10))
    v = check_proof(result.proof, treehash, INITIAL_DEPTH, _key(10), False, False)
    assert v.treehash == treehash


def test_tracks_splits_and_depth_growth(db):
    treehash = empty_tree_hash()
    depth = INITIAL_DEPTH
    n = 0
    while depth == INITIAL_DEPTH:
        n += 1
        result = db.test_and_set(_key(n))
        v = check_proof(result.proof, treehash, depth, _key(n), False, True)
        assert v.treehash == result.root_hash
        treehash, depth = v.treehash, v.maxdepth
    assert depth == INITIAL_DEPTH + 1
    assert db.depth == depth
    assert db.check()
    # A random-order probe still validates against the new tree.
    probe = db.test(_key(n // 2))
    assert check_proof(probe.proof, treehash, depth, _key(n // 2), True, False).found


def test_wrong_foundness_raises(db):
    result = db.test(_key(1))
    with pytest.raises(ProofError):
        check_proof(result.proof, empty_tree_hash(), INITIAL_DEPTH, _key(1), True, False)


def test_tampered_proof_rejected(db):
    for n in range(1, 6):
        db.test_and_set(_key(n))
    good = db.test(_key(3))
    treehash = good.root_hash
    assert validate_db_operation(treehash, good.proof, INITIAL_DEPTH, _key(3), False).found
    tampered = bytearray(good.proof)
    tampered[-1] ^= 0xFF
    with pytest.raises(ProofError):
        validate_db_operation(treehash, bytes(tampered), INITIAL_DEPTH, _key(3), False)


def test_wrong_treehash_rejected(db):
    result = db.test(_key(1))
    with pytest.raises(ProofError):
        validate_db_operation(b"\x01" * HASHSIZE, result.proof, INITIAL_DEPTH, _key(1), False)


def test_truncated_and_padded_proofs_rejected(db):
    result = db.test(_key(1))
    with pytest.raises(ProofError):
        validate_db_operation(empty_tree_hash(), result.proof[:-1], INITIAL_DEPTH, _key(1), False)
    with pytest.raises(ProofError):
        validate_db_operation(empty_tree_hash(), result.proof + b"\0", INITIAL_DEPTH, _key(1), False)
    with pytest.raises(ProofError):
        validate_db_operation(empty_tree_hash(), b"", INITIAL_DEPTH, _key(1), False)


def test_too_many_keys_rejected():
    proof = struct.pack(">II", NODEKEYS + 1, 0)
    with pytest.raises(ProofError):
        validate_db_operation(node_data_hash([], [], True), proof, 1, _key(1), False)


def test_wrong_key_index_rejected():
    keys = [_key(10), _key(20)]
    treehash = node_data_hash(keys, [], True)
    good = validate_db_operation(treehash, _leaf_record(keys, 1), 1, _key(15), False)
    assert good.found is False
    with pytest.raises(ProofError):
        validate_db_operation(treehash, _leaf_record(keys, 0), 1, _key(15), False)
    with pytest.raises(ProofError):
        validate_db_operation(treehash, _leaf_record(keys, 2), 1, _key(15), False)
    with pytest.raises(ProofError):
        validate_db_operation(treehash, _leaf_record(keys, 3), 1, _key(15), False)


def test_single_leaf_insert_matches_hash():
    keys = [_key(10), _key(20)]
    treehash = node_data_hash(keys, [], True)
    v = validate_db_operation(treehash, _leaf_record(keys, 1), 1, _key(15), True)
    assert v.treehash == node_data_hash([_key(10), _key(15), _key(20)], [], True)
    assert v.maxdepth == 1


def test_full_leaf_root_split_grows_depth():
    keys = [_key(2 * i) for i in range(1, NODEKEYS + 1)]
    treehash = node_data_hash(keys, [], True)
    v = validate_db_operation(treehash, _leaf_record(keys, NODEKEYS), 1, _key(1000), True)
    assert v.maxdepth == 2
    assert v.found is False


def test_bad_key_length_rejected(db):
    result = db.test(_key(1))
    with pytest.raises(ValueError):
        validate_db_operation(empty_tree_hash(), result.proof, INITIAL_DEPTH, b"short", False)