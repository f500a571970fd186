"""Host side of the RPOW server.

The host owns the spent-token databases and the network socket.  It hands
requests to the card and answers the card's database queries, with a proof
of each answer, while a sign request is in progress.
"""

from __future__ import annotations

import os
import re
import signal
import socket
import struct
import sys
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, ClassVar, Iterator, NoReturn, Sequence, TextIO

from .dbproof import HASHSIZE, ProofDB
from .protocol import CARDID_LENGTH, Command, ErrorCode, up4

__all__ = [
    "CARD_BUFFER",
    "CARD_MESSAGE",
    "CHAINFILENAME",
    "CHAINSIZE",
    "KEYSIZE",
    "NPOWDBS",
    "PUBKEY_STATE_ACTIVE",
    "PUBKEY_STATE_INACTIVE",
    "PUBKEY_STATE_SIGNING",
    "TIMEOUTSECS",
    "Card",
    "CardError",
    "HostServer",
    "Invocation",
    "RequestBlock",
    "UsageError",
    "card_request",
    "db_count",
    "db_name",
    "dump_buffer",
    "main",
    "parse_args",
    "read_exact",
]

#: Number of token databases created at initialisation, besides database 0.
NPOWDBS = 3
#: File holding the card's certificate chain.
CHAINFILENAME = "certchain.dat"
#: Largest certificate chain or card reply handled.
CHAINSIZE = 20000
#: Bit size of the RSA key that secures client communication.
KEYSIZE = 1024
#: Seconds to wait for each read from a client.
TIMEOUTSECS = 3

PUBKEY_STATE_SIGNING = 1
PUBKEY_STATE_ACTIVE = 2
PUBKEY_STATE_INACTIVE = 3

#: Card status meaning "debug text attached, request still running".
CARD_MESSAGE = 123
#: Card status meaning "debug bytes attached, request still running".
CARD_BUFFER = 124

# Integers passed to and from the card travel in host (little-endian) order;
# integers on the network are big-endian.
_HOST_INT = struct.Struct("<i")
_HOST_UINT = struct.Struct("<I")
_WIRE_STATUS = struct.Struct(">I")
_WIRE_LENGTH = struct.Struct(">H")

_PROG = "rpowhost"
_USAGE = (
    f"Usage: {_PROG} [-d workingdirectory] command args\n"
    "  Commands are:\n"
    "    initialize [cnum]\n"
    "    listen port [cnum]\n"
    "    rollover [cnum]\n"
    "    addpub chainfile [cnum]\n"
    "    disable keynum [cnum]\n"
    "    enable keynum [cnum]\n"
    "    clearlowbatt [cnum]\n"
    "    (cnum is card number, defaults to 0)"
)
_SIMPLE_COMMANDS = ("initialize", "rollover", "clearlowbatt")
_COMMANDS = _SIMPLE_COMMANDS + ("listen", "addpub", "enable", "disable")


class UsageError(Exception):
    """The command line could not be understood."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or _USAGE)


class CardError(Exception):
    """A request to the card failed.

    ``status`` is the card's status code when the card answered with an
    error, and ``None`` when the request could not be carried out at all.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def exit_code(self) -> int:
        """Process exit status that this failure calls for."""
        return 1 if self.status is None else 2


@dataclass
class RequestBlock:
    """One request to the card and, once carried out, its answer."""

    command: int
    outputs: list[bytes] = field(default_factory=list)
    inputs: list[bytes] = field(default_factory=list)
    status: int = 0
    debug: bytes = b""


class Card(ABC):
    """A coprocessor card running the RPOW agent."""

    #: Adapters installed in this system, in adapter-number order.
    adapters: ClassVar[list["Card"]] = []

    @abstractmethod
    def request(self, block: RequestBlock) -> None:
        """Carry out ``block``, filling in its status, inputs and debug data.

        Raises :class:`CardError` if the request cannot be delivered.
        """


@dataclass
class Invocation:
    """A parsed command line."""

    command: str
    directory: str | None = None
    adapter: int = 0
    port: int | None = None
    chainfile: str | None = None
    keynum: int | None = None


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def parse_args(argv: Sequence[str]) -> Invocation:
    """Parse the command line (without the program name)."""
    args = list(argv)
    directory = None
    if args and args[0] == "-d":
        if len(args) < 3:
            raise UsageError()
        directory, args = args[1], args[2:]
    if not args or args[0] not in _COMMANDS:
        raise UsageError()

    command, rest = args[0], args[1:]
    if command in _SIMPLE_COMMANDS:
        if len(rest) > 1:
            raise UsageError()
        return Invocation(command, directory, _atoi(rest[0]) if rest else 0)

    if not 1 <= len(rest) <= 2:
        raise UsageError()
    adapter = _atoi(rest[1]) if len(rest) == 2 else 0

    if command == "listen":
        port = _atoi(rest[0])
        if not 0 <= port <= 65535:
            raise UsageError(f"Illegal port number {port}")
        return Invocation(command, directory, adapter, port=port)
    if command == "addpub":
        return Invocation(command, directory, adapter, chainfile=rest[0])
    keynum = _atoi(rest[0])
    if keynum < 0:
        raise UsageError(f"Illegal key number {keynum}")
    return Invocation(command, directory, adapter, keynum=keynum)


def db_name(n: int) -> str:
    """Return the file name of token database ``n``."""
    return f"rpow{n:03d}.db"


def db_count(directory: str | os.PathLike[str] = ".") -> int:
    """Count the databases, numbered consecutively from 0, in ``directory``."""
    base = Path(directory)
    n = 0
    while (base / db_name(n)).exists():
        n += 1
    return n


def dump_buffer(data: bytes) -> str:
    """Format bytes as space-separated hex, ending the line unless a multiple of 16."""
    text = "".join(f"{b:02x} " for b in data)
    return text + ("\n" if len(data) % 16 else "")


def read_exact(sock: socket.socket, count: int) -> bytes:
    """Read up to ``count`` bytes, stopping early at end of stream, error or timeout."""
    chunks = []
    received = 0
    while received < count:
        try:
            chunk = sock.recv(count - received)
        except OSError:
            break
        if not chunk:
            break
        chunks.append(chunk)
        received += len(chunk)
    return b"".join(chunks)


def card_request(
    card: Card, block: RequestBlock, out: TextIO | None = None
) -> RequestBlock:
    """Send ``block`` to the card, relaying its debug output, and return the answer.

    The card may answer with debug text or bytes before finishing; the request
    is then repeated until a final status arrives.  ``block`` is left as it was.
    """
    out = sys.stdout if out is None else out
    while True:
        attempt = replace(block, outputs=list(block.outputs), inputs=[], status=0, debug=b"")
        card.request(attempt)
        if attempt.status == CARD_MESSAGE:
            text = attempt.debug.split(b"\0", 1)[0].decode("latin-1")
            out.write(f"Msg from card: {text}")
            out.flush()
        elif attempt.status == CARD_BUFFER:
            out.write("Buf from card:\n" + dump_buffer(attempt.debug))
        else:
            return attempt


def _input(block: RequestBlock, index: int) -> bytes:
    return block.inputs[index] if index < len(block.inputs) else b""


def _send(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(data)
    except OSError:
        pass


@contextmanager
def _deferred_interrupts(out: TextIO) -> Iterator[None]:
    """Hold SIGINT and SIGTERM until the block ends, then exit if one came."""
    interrupted: list[int] = []

    def handler(signum: int, frame: object) -> None:
        signal.signal(signum, signal.SIG_IGN)
        interrupted.append(signum)

    try:
        previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    except ValueError:
        # Signal handlers can only be installed from the main thread.
        yield
        return
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old if old is not None else signal.SIG_DFL)
    if interrupted:
        print("Interrupted by signal, exiting...", file=out)
        out.flush()
        raise SystemExit(0)


class HostServer:
    """Carries out the host's commands against one card and its databases."""

    def __init__(
        self,
        card: Card,
        directory: str | os.PathLike[str] = ".",
        out: TextIO | None = None,
    ) -> None:
        self.card = card
        self.directory = Path(directory)
        self.out = sys.stdout if out is None else out
        self.chain = b""

    def _say(self, text: str) -> None:
        print(text, file=self.out)

    def _path(self, name: str | os.PathLike[str]) -> Path:
        return self.directory / name

    def _request(self, block: RequestBlock, check: bool = True) -> RequestBlock:
        done = card_request(self.card, block, self.out)
        if check and done.status != 0:
            raise CardError(f"Error, status returned is {done.status}", status=done.status)
        return done

    def _create_db(self, n: int, message: str) -> None:
        db = ProofDB.open(self._path(db_name(n)))
        created = db.created
        db.close()
        if not created:
            raise FileExistsError(message)

    def _open_chain_for_output(self) -> BinaryIO:
        try:
            return open(self._path(CHAINFILENAME), "wb")
        except OSError as exc:
            raise OSError(f"Unable to open chain file {CHAINFILENAME} for output") from exc

    def _fetch_chain(self, chain_file: BinaryIO) -> bytes:
        done = self._request(RequestBlock(Command.GETCHAIN))
        chain = _input(done, 0)[:CHAINSIZE]
        chain_file.write(chain)
        self.chain = chain
        self._say("Cert chain retrieved.")
        return chain

    # -- administrative commands -------------------------------------------

    def keygen(self) -> bytes:
        """Create the databases, have the card generate its keys, save the chain."""
        numdbs = db_count(self.directory)
        if numdbs:
            raise FileExistsError(f"{numdbs} old database files found.  Delete before keygen")
        for i in range(NPOWDBS + 1):
            self._create_db(i, f"Old database file {db_name(i)} found.  Delete it before keygen")
        with self._open_chain_for_output() as chain_file:
            self._say("Generating keys on card...")
            self._request(RequestBlock(Command.INITKEYGEN))
            self._say("Card initialized successfully!")
            self._say("Getting cert chain...")
            return self._fetch_chain(chain_file)

    def rollover(self) -> int:
        """Start a new database and have the card roll its keys over to it."""
        dbnum = db_count(self.directory)
        self._create_db(dbnum, f"Rollover error, old database file {db_name(dbnum)} found.")
        with self._open_chain_for_output() as chain_file:
            self._say(f"Generating rollover keys on card as number {dbnum}...")
            self._request(RequestBlock(Command.ROLLOVER, [_HOST_INT.pack(dbnum)]))
            self._say("Rollover keys generated successfully!")
            self._say("Getting new cert chain...")
            self._fetch_chain(chain_file)
        return dbnum

    def add_pub(self, chainfile: str | os.PathLike[str]) -> int:
        """Give the card another node's key chain, with a new database for it."""
        try:
            with open(self._path(chainfile), "rb") as f:
                data = f.read(CHAINSIZE)
        except OSError as exc:
            raise OSError(f"Unable to open file {chainfile}") from exc
        dbnum = db_count(self.directory)
        self._create_db(dbnum, f"Addpub error, old database file {db_name(dbnum)} found.")
        self._request(RequestBlock(Command.ADDKEY, [_HOST_INT.pack(dbnum), data]))
        self._say(f"Successfully added key number {dbnum} from {chainfile}")
        return dbnum

    def change_state(self, keynum: int, enable: bool) -> None:
        """Enable or disable key ``keynum`` on the card."""
        state = PUBKEY_STATE_ACTIVE if enable else PUBKEY_STATE_INACTIVE
        self._request(
            RequestBlock(Command.CHANGEKEYSTATE, [_HOST_INT.pack(keynum), _HOST_INT.pack(state)])
        )
        self._say(f"Successfully {'enabled' if enable else 'disabled'} key {keynum}")

    def clear_low_battery(self) -> None:
        """Reset the card's low battery latch."""
        self._request(RequestBlock(Command.CLEARLOWBATT))
        self._say("Successfully reset low battery latch")

    # -- network service ---------------------------------------------------

    def open_databases(self) -> list[ProofDB]:
        """Load the certificate chain and open every existing database."""
        try:
            with open(self._path(CHAINFILENAME), "rb") as f:
                self.chain = f.read(CHAINSIZE)
        except OSError as exc:
            raise OSError(f"Unable to open chain file {CHAINFILENAME}") from exc

        databases: list[ProofDB] = []
        try:
            for i in range(db_count(self.directory)):
                db = ProofDB.open(self._path(db_name(i)))
                databases.append(db)
                if db.created:
                    raise FileNotFoundError(
                        f"Unable to find DB file {db_name(i)}; delete it and run keygen"
                    )
        except BaseException:
            for db in databases:
                db.close()
            raise
        return databases

    def handle_connection(self, sock: socket.socket, databases: Sequence[ProofDB]) -> None:
        """Answer one client request on ``sock``, then close it."""
        try:
            sock.settimeout(TIMEOUTSECS)
            header = read_exact(sock, 1 + _WIRE_LENGTH.size)
            if len(header) < 1 + _WIRE_LENGTH.size:
                return
            command = header[0]
            (length,) = _WIRE_LENGTH.unpack(header[1:])
            payload = read_exact(sock, length)
            if len(payload) < length:
                return
            if command == Command.GETCHAIN:
                self._answer_chain(sock)
            elif command == Command.STAT:
                self._answer_stat(sock, payload)
            elif command == Command.SIGN:
                self._answer_sign(sock, payload, databases)
        finally:
            sock.close()
            self.out.flush()

    def _answer_chain(self, sock: socket.socket) -> None:
        chain = self.chain
        _send(sock, _WIRE_LENGTH.pack(len(chain) & 0xFFFF) + chain.ljust(up4(len(chain)), b"\0"))
        self._say("Chain query answered")

    def _reply(self, sock: socket.socket, done: RequestBlock, message: str) -> None:
        _send(sock, _WIRE_STATUS.pack(done.status & 0xFFFFFFFF))
        if done.status != 0:
            self._say(f"Card reports error, code is {done.status}")
            return
        _send(sock, _input(done, 0))
        self._say(message)

    def _answer_stat(self, sock: socket.socket, payload: bytes) -> None:
        if len(payload) != KEYSIZE // 8:
            return
        done = self._request(RequestBlock(Command.STAT, [payload]), check=False)
        self._reply(sock, done, "Status query answered")

    def _answer_sign(
        self, sock: socket.socket, payload: bytes, databases: Sequence[ProofDB]
    ) -> None:
        body = len(payload) - CARDID_LENGTH
        if body <= KEYSIZE // 8 or body % 4:
            return
        split = CARDID_LENGTH + KEYSIZE // 8
        block = RequestBlock(Command.SIGN, [payload[CARDID_LENGTH:split], payload[split:]])
        with _deferred_interrupts(self.out):
            done = self._request(block, check=False)
            while done.status == -ErrorCode.DBQUERY:
                done = self._answer_query(done, databases)
        self._reply(sock, done, "Sign request handled")

    def _answer_query(self, query: RequestBlock, databases: Sequence[ProofDB]) -> RequestBlock:
        key = _input(query, 0)
        if len(key) != HASHSIZE:
            raise CardError(f"Error, answer back length is {len(key)}", status=query.status)
        roothash = _input(query, 1)
        (fileid,) = _HOST_UINT.unpack(_input(query, 2)[:4].ljust(4, b"\0"))

        if fileid >= len(databases):
            self._say(f"Error, card asked for fileid {fileid}")
            proof = b""
        else:
            self.out.write(f"Host querying DB {fileid} with hash " + dump_buffer(key))
            self.out.write("Host expects DB root hash " + dump_buffer(roothash))
            result = databases[fileid].test_and_set(key)
            self.out.write("New DB root hash:         " + dump_buffer(result.root_hash))
            proof = result.proof

        answer = RequestBlock(
            Command.DBAUTH,
            [_HOST_UINT.pack(len(proof)), proof.ljust(up4(len(proof)), b"\0")],
        )
        return self._request(answer, check=False)

    def serve(self, port: int) -> NoReturn:
        """Listen on ``port`` and answer clients for ever."""
        databases = self.open_databases()
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                listener.bind(("", port))
                listener.listen(5)
                self._say(f"Listening on port {port}, {len(databases)} rpowdb files found...")
                self.out.flush()
                while True:
                    conn, address = listener.accept()
                    self._say(f"Incoming connection from {address[0]} at {time.ctime()}")
                    self.handle_connection(conn, databases)
        finally:
            for db in databases:
                db.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Run one host command; return the process exit status."""
    if argv is None:
        argv = sys.argv[1:]
    try:
        invocation = parse_args(argv)
    except UsageError as exc:
        print(exc, file=sys.stderr)
        return 1

    directory = Path(invocation.directory or ".")
    if invocation.directory and not directory.is_dir():
        print(f"Unable to change directory to {invocation.directory}", file=sys.stderr)
        return 1

    adapters = Card.adapters
    if invocation.adapter < 0 or len(adapters) < invocation.adapter + 1:
        print(
            f"Found {len(adapters)} adapters in the system; "
            f"command targeted to adapter index {invocation.adapter}"
        )
        return 1
    print("Adapter ready!")
    server = HostServer(adapters[invocation.adapter], directory, sys.stdout)

    try:
        if invocation.command == "initialize":
            server.keygen()
        elif invocation.command == "listen":
            server.serve(invocation.port or 0)
        elif invocation.command == "rollover":
            server.rollover()
        elif invocation.command in ("enable", "disable"):
            server.change_state(invocation.keynum or 0, invocation.command == "enable")
        elif invocation.command == "addpub":
            server.add_pub(invocation.chainfile or "")
        else:
            server.clear_low_battery()
    except CardError as exc:
        print(exc)
        return exc.exit_code
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0