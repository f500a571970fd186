"""Command numbers, error codes, status codes and sizes shared with the card."""

from __future__ import annotations

from enum import IntEnum

__all__ = [
    "AGENT_NAME",
    "CARDID_LENGTH",
    "Command",
    "ErrorCode",
    "KEYID_LENGTH",
    "POW_RESOURCE_TAIL",
    "RPOW_EXP",
    "RPOW_ID_LENGTH",
    "RPOW_VALUE_COUNT",
    "RPOW_VALUE_MAX",
    "RPOW_VALUE_MIN",
    "RpowStatus",
    "RpowType",
    "up4",
]

#: Name under which the card-side agent is registered.
AGENT_NAME = b"reusablepow"

#: Hashcash resource string suffix, preceded by the card id in hex.
POW_RESOURCE_TAIL = ".rpow.net"

#: Public exponent for all keys; signing keys use consecutive primes from here.
RPOW_EXP = 65537

KEYID_LENGTH = 20
CARDID_LENGTH = 14
RPOW_ID_LENGTH = 20 + CARDID_LENGTH

RPOW_VALUE_MIN = 20
RPOW_VALUE_MAX = 50
RPOW_VALUE_COUNT = RPOW_VALUE_MAX - RPOW_VALUE_MIN + 1


class Command(IntEnum):
    """Requests understood by the card."""

    INITKEYGEN = 1
    ROLLOVER = 2
    ADDKEY = 3
    CHANGEKEYSTATE = 4
    GETCHAIN = 5
    SIGN = 6
    DBAUTH = 7
    STAT = 8
    CLEARLOWBATT = 9


class ErrorCode(IntEnum):
    """Failure codes reported by the card."""

    UNKNOWNCMD = -1
    BADINPUT = -2
    NOMEM = -3
    INVALID = -4
    DBFAILED = -5
    UNINITIALIZED = -6

    FAILEDOTHER = -20
    FAILEDPUTBUFFER = -21
    FAILEDGETBUFFER = -22
    FAILEDGENERATE = -23
    FAILEDGETCERT = -24
    FAILEDSHA1 = -25
    FAILEDRSADECRYPT = -26
    FAILEDRSAENCRYPT = -27
    FAILEDRSASIGN = -28
    FAILEDTDESDECRYPT = -29
    FAILEDTDESENCRYPT = -30
    FAILEDPPD = -31
    FAILEDOA = -32
    FAILEDBLIND = -33

    # Not an error: the card is asking the host to query its database.
    DBQUERY = -100


class RpowType(IntEnum):
    """Kinds of token that may be presented to the card."""

    RPOW = 1
    HASHCASH = 2


class RpowStatus(IntEnum):
    """Per-item status codes returned with a sign request."""

    OK = 0
    REUSED = 1
    INVALID = 2
    INSUFFICIENT = 3
    BADTIME = 4
    MISMATCH = 5
    WRONGKEY = 6
    BADFORMAT = 7
    BADRESOURCE = 8
    UNKNOWNKEY = 9
    BADRPEND = 10
    BADCARDID = 11


def up4(n: int) -> int:
    """Round ``n`` up to the next multiple of four."""
    if n < 0:
        raise ValueError(f"length must not be negative: {n}")
    return (n + 3) // 4 * 4