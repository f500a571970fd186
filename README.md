# rpowhost

`rpowhost` is the host side of a reusable proof-of-work (RPOW) token server.
It sits between network clients and a secure coprocessor card. The card
signs tokens and decides which ones are valid. The host keeps the large
database of spent tokens on the card's behalf. With every lookup the host
hands the card a compact proof, so the card can check that the database was
consulted and updated honestly while it remembers only a single root hash
and the tree depth.

The package needs nothing beyond the Python standard library (3.10 or later).

## Installation

```
pip install .
```

To run the tests as well:

```
pip install .[test]
pytest
```

## What the package does not include

There is no driver for a coprocessor card. `rpowhost.server.Card` is an
abstract class with one method, `request(block)`, and `Card.adapters` is an
empty list until you put cards in it. Until then every `rpowhost` command
stops with `Found 0 adapters in the system; ...` and exit status 1. To use the
command line, subclass `Card`, implement `request` so that it fills in the
block's `status`, `inputs` and `debug` fields (raising `CardError` if the
request cannot be delivered), append an instance to `Card.adapters`, and call
`rpowhost.server.main` with the arguments:

```python
from rpowhost.server import Card, RequestBlock, main

class MyCard(Card):
    def request(self, block: RequestBlock) -> None:
        # Deliver block.command and block.outputs to the device here and
        # store its answer in block.status, block.inputs and block.debug.
        ...

Card.adapters.append(MyCard())
raise SystemExit(main(["listen", "8082"]))
```

## Command line

```
rpowhost [-d workingdirectory] command args
```

| Command                    | What it does                                       |
|----------------------------|----------------------------------------------------|
| `initialize [cnum]`        | create databases 0 to 3, have the card generate its keys, and write `certchain.dat` |
| `listen port [cnum]`       | serve client requests on a TCP port                |
| `rollover [cnum]`          | create the next database and have the card roll its keys over to it, rewriting `certchain.dat` |
| `addpub chainfile [cnum]`  | create the next database and pass another node's certificate chain to the card |
| `disable keynum [cnum]`    | mark a key inactive on the card                    |
| `enable keynum [cnum]`     | mark a key active on the card                      |
| `clearlowbatt [cnum]`      | clear the card's low-battery latch                 |

`cnum` is the card number, an index into `Card.adapters`, and defaults to 0.
`-d` names the directory that holds the databases and `certchain.dat`. The
spent-token databases are stored there as `rpow000.db`, `rpow001.db` and so
on, each with a companion `.vals` file for the leaf nodes; they are counted
consecutively from `rpow000.db`.

Exit status is 0 on success, 1 for usage errors, file errors and failed card
requests, and 2 when the card answers with a non-zero status.

### Client protocol of `listen`

Each connection carries one request: a command byte, a two-byte big-endian
length, and that many payload bytes (reads time out after 3 seconds).

- `Command.GETCHAIN` (5): answered with a two-byte big-endian length and the
  certificate chain, zero-padded to a multiple of four bytes.
- `Command.STAT` (8): the payload must be exactly 128 bytes. The answer is a
  four-byte big-endian card status, followed by the card's reply if the
  status is 0.
- `Command.SIGN` (6): the payload is a 14-byte card id, a 128-byte block and a
  non-empty remainder whose length is a multiple of four. While the card asks
  for database lookups, the host answers each with `test_and_set` on the
  requested database and returns the proof. The answer to the client is the
  card's final status, followed by its reply if the status is 0. SIGINT and
  SIGTERM are held back while a sign request is in progress.

Other commands and malformed requests close the connection without an answer.

## Library use

The provable database can be used on its own:

```python
from rpowhost.dbproof import ProofDB, empty_tree_hash
from rpowhost.validate import validate_db_operation

treehash = empty_tree_hash()
depth = 2

with ProofDB.open("spent.db") as db:      # creates spent.db and spent.db.vals
    key = bytes(20)
    result = db.test_and_set(key)
    outcome = validate_db_operation(treehash, result.proof, depth, key, True)
    treehash, depth = outcome.treehash, outcome.maxdepth
    assert treehash == result.root_hash
```

`rpowhost.dbproof`:

- `ProofDB.open(name)` opens a database, creating it if it is missing; the
  `created` attribute tells which happened.
- `test(key)`, `test_and_set(key)` and `test_and_maybe_set(key, set)` look up a
  20-byte key and return a `ProofResult` with `found`, `proof` and `root_hash`.
- `check()` verifies key order and every stored child hash; `keys()` yields
  all keys in ascending order; `close()` or a `with` block closes the files.
- `empty_tree_hash()` and `node_data_hash(keys, child_hashes, isleaf)` give
  the hashes the tree is built from. Nodes hold at most 100 keys and the tree
  grows to at most 6 levels.

`rpowhost.validate`:

- `validate_db_operation(treehash, proof, maxdepth, key, set)` returns a
  `Validation` with `found`, `treehash` and `maxdepth` after the operation,
  and raises `ProofError` when the proof does not match.
- `check_proof(proof, treehash, maxdepth, key, should_be_found, set)` does the
  same and also raises `ProofError` if the key's presence is not as expected.

Other modules:

- `rpowhost.protocol`: command numbers, error codes and status codes shared
  with the card and clients (`Command`, `ErrorCode`, `RpowStatus`,
  `RpowType`, `up4`).
- `rpowhost.sha1`: a self-contained SHA-1 (`Sha1` with `update`, `digest`,
  `hexdigest` and `copy`, and the one-shot `sha1`).
- `rpowhost.server`: `HostServer`, which carries out each command against a
  `Card`, plus `parse_args`, `card_request`, `db_name`, `db_count`,
  `dump_buffer`, `read_exact` and `main`.