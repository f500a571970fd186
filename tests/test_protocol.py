import pytest

from rpowhost.protocol import (
    CARDID_LENGTH,
    RPOW_ID_LENGTH,
    Command,
    ErrorCode,
    RpowStatus,
    RpowType,
    up4,
)


@pytest.mark.parametrize("n", list(range(0, 41)))
def test_up4_is_smallest_multiple_of_four_not_below(n):
    result = up4(n)
    assert result % 4 == 0
    assert n <= result < n + 4


@pytest.mark.parametrize("n", [0, 4, 128, 20000])
def test_up4_keeps_multiples_of_four(n):
    assert up4(n) == n


def test_up4_rejects_negative():
    with pytest.raises(ValueError):
        up4(-1)


def test_command_numbers_match_wire_values():
    assert Command.SIGN == 6
    assert Command(7) is Command.DBAUTH
    assert [c.value for c in Command] == list(range(1, 10))


def test_dbquery_is_special_code():
    assert ErrorCode.DBQUERY == -100
    assert ErrorCode(-33) is ErrorCode.FAILEDBLIND


def test_status_and_type_lookup():
    assert RpowStatus(11) is RpowStatus.BADCARDID
    assert RpowStatus.OK == 0
    assert RpowType(2) is RpowType.HASHCASH


def test_unknown_command_rejected():
    with pytest.raises(ValueError):
        Command(42)


def test_padded_identifier_lengths():
    assert up4(RPOW_ID_LENGTH) == 36
    assert up4(CARDID_LENGTH) == 16