"""SHA-1 message digest."""

from __future__ import annotations

import struct

__all__ = ["Sha1", "sha1"]

_MASK = 0xFFFFFFFF
_INITIAL = (0x67452301, 0xEFCDAB89, 0x98BADCFE, 0x10325476, 0xC3D2E1F0)


def _rol(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (32 - bits))) & _MASK


def _compress(state: tuple[int, ...], block: bytes) -> tuple[int, ...]:
    w = list(struct.unpack(">16I", block))
    for i in range(16, 80):
        w.append(_rol(w[i - 3] ^ w[i - 8] ^ w[i - 14] ^ w[i - 16], 1))

    a, b, c, d, e = state
    for i, word in enumerate(w):
        if i < 20:
            f = (b & (c ^ d)) ^ d
            k = 0x5A827999
        elif i < 40:
            f = b ^ c ^ d
            k = 0x6ED9EBA1
        elif i < 60:
            f = ((b | c) & d) | (b & c)
            k = 0x8F1BBCDC
        else:
            f = b ^ c ^ d
            k = 0xCA62C1D6
        a, b, c, d, e = (_rol(a, 5) + f + e + k + word) & _MASK, a, _rol(b, 30), c, d

    return tuple((x + y) & _MASK for x, y in zip(state, (a, b, c, d, e)))


class Sha1:
    """Incremental SHA-1 hasher."""

    name = "sha1"
    digest_size = 20
    block_size = 64

    def __init__(self, data: bytes = b"") -> None:
        self._state: tuple[int, ...] = _INITIAL
        self._pending = b""
        self._length = 0
        if data:
            self.update(data)

    def update(self, data: bytes) -> None:
        """Feed more bytes into the hash."""
        chunk = memoryview(data).tobytes()
        self._length += len(chunk)
        pending = self._pending + chunk
        full = len(pending) - len(pending) % self.block_size
        state = self._state
        for start in range(0, full, self.block_size):
            state = _compress(state, pending[start:start + self.block_size])
        self._state = state
        self._pending = pending[full:]

    def digest(self) -> bytes:
        """Return the digest of everything fed so far, leaving the hasher usable."""
        bit_length = (self._length * 8) & 0xFFFFFFFFFFFFFFFF
        padding = b"\x80" + b"\x00" * ((55 - self._length) % 64)
        tail = self._pending + padding + struct.pack(">Q", bit_length)
        state = self._state
        for start in range(0, len(tail), self.block_size):
            state = _compress(state, tail[start:start + self.block_size])
        return struct.pack(">5I", *state)

    def hexdigest(self) -> str:
        """Return the digest as lower-case hex."""
        return self.digest().hex()

    def copy(self) -> "Sha1":
        """Return an independent hasher with the same state."""
        other = Sha1()
        other._state = self._state
        other._pending = self._pending
        other._length = self._length
        return other


def sha1(data: bytes) -> bytes:
    """Return the SHA-1 digest of ``data``."""
    return Sha1(data).digest()