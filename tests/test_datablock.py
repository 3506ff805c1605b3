import pytest

from fslatency.datablock import (
    DATABLOCK_ARRAY_LEN,
    DATABLOCK_SIZE,
    EXTREME_BIG_INTERVAL,
    HOSTNAME_LEN,
    MAGIC,
    MESSAGE_SIZE,
    NAME_KEY_LEN,
    TEXT_LEN,
    DataBlock,
    MessageBlock,
    MessageFormatError,
    Timespec,
)


def _sample_block(n: int) -> DataBlock:
    return DataBlock(
        measurementcount=n,
        starttime=Timespec(1700000000 + n, 123456789),
        endtime=Timespec(1700000001 + n, 987654321),
        min=-1.25 * n,
        max=2.5 * n,
        sumx=10.0 * n,
        sumxx=100.0 * n,
    )


def _sample_message() -> MessageBlock:
    return MessageBlock(
        hostname="host-a",
        text="root disk",
        precision=Timespec(0, 1),
        blocks=tuple(_sample_block(i) for i in range(DATABLOCK_ARRAY_LEN)),
    )


def test_default_message_starts_with_terminated_magic():
    packed = MessageBlock().pack()
    assert packed[:16] == b"fslatency      \x00"
    assert packed[:16] == MAGIC


def test_timespec_from_seconds():
    assert Timespec.from_seconds(1.5) == Timespec(1, 500000000)


def test_timespec_round_trip_seconds():
    ts = Timespec(12, 250000000)
    assert Timespec.from_seconds(ts.to_seconds()) == ts


def test_timespec_ordering_matches_later_time():
    assert Timespec(5, 1) > Timespec(5, 0)
    assert Timespec(6, 0) > Timespec(5, 999999999)
    assert not (Timespec(5, 0) > Timespec(5, 0))


def test_timespec_is_zero():
    assert Timespec().is_zero()
    assert not Timespec(0, 1).is_zero()


def test_empty_block_marks_no_measurement():
    block = DataBlock.empty()
    assert block.min == EXTREME_BIG_INTERVAL
    assert block.measurementcount == 0
    assert block.starttime.is_zero() and block.endtime.is_zero()


def test_datablock_round_trip():
    block = _sample_block(3)
    packed = block.pack()
    assert len(packed) == DATABLOCK_SIZE
    assert DataBlock.unpack(packed) == block


def test_datablock_unpack_wrong_size():
    with pytest.raises(MessageFormatError):
        DataBlock.unpack(b"\0" * (DATABLOCK_SIZE - 1))


def test_datablock_describe_mentions_fields():
    text = _sample_block(5).describe()
    assert " number of measurements: 5" in text.splitlines()
    assert "   starttime: 1700000005.123456789" in text.splitlines()


def test_message_round_trip():
    message = _sample_message()
    packed = message.pack()
    assert len(packed) == MESSAGE_SIZE
    assert MessageBlock.unpack(packed) == message


def test_message_wire_starts_with_magic():
    assert _sample_message().pack()[:16] == MAGIC


def test_message_unpack_wrong_size():
    with pytest.raises(MessageFormatError):
        MessageBlock.unpack(_sample_message().pack() + b"\0")


def test_message_requires_eight_blocks():
    with pytest.raises(ValueError):
        MessageBlock(blocks=(DataBlock(),))


def test_long_text_is_truncated():
    message = MessageBlock(hostname="h" * 100, text="t" * 100)
    decoded = MessageBlock.unpack(message.pack())
    assert decoded.hostname == "h" * HOSTNAME_LEN
    assert decoded.text == "t" * TEXT_LEN


def test_name_key_layout():
    message = _sample_message()
    key = message.name_key()
    assert len(key) == NAME_KEY_LEN
    assert key[:HOSTNAME_LEN].rstrip(b"\0") == b"host-a"
    assert key[HOSTNAME_LEN:].rstrip(b"\0") == b"root disk"


def test_name_key_distinguishes_text():
    a = MessageBlock(hostname="host-a", text="one")
    b = MessageBlock(hostname="host-a", text="two")
    assert a.name_key() != b.name_key()
    assert a.name_key() == MessageBlock(hostname="host-a", text="one").name_key()


def test_compatibility_checks():
    assert _sample_message().is_compatible()
    assert not MessageBlock(major=1).is_compatible()
    assert not MessageBlock(minor=2).is_compatible()
    assert not MessageBlock(magic=b"something else!\x00").is_compatible()


def test_incompatible_message_still_decodes():
    packed = MessageBlock(minor=7).pack()
    decoded = MessageBlock.unpack(packed)
    assert decoded.minor == 7
    assert not decoded.is_compatible()