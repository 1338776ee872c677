"""
Tests for mnemos.ids — sortable identifiers.
"""

import time

import pytest

from mnemos.errors import InvalidIdentifier
from mnemos.ids import (
    ENCODING,
    ID_LEN,
    encode_time,
    generate,
    is_valid_id,
    now_ms,
    prefix_of,
    strip_prefix,
    timestamp_of,
)


class TestGenerate:
    def test_bare_id_length_and_alphabet(self):
        eid = generate()
        assert len(eid) == ID_LEN
        assert all(ch in ENCODING for ch in eid)

    def test_prefixed(self):
        eid = generate("mem")
        assert eid.startswith("mem_")
        assert prefix_of(eid) == "mem"
        assert len(strip_prefix(eid)) == ID_LEN
        assert is_valid_id(eid)

    def test_prefix_with_separator_rejected(self):
        with pytest.raises(ValueError):
            generate("bad_prefix")

    def test_unique(self):
        ids = {generate("mem") for _ in range(1000)}
        assert len(ids) == 1000

    def test_sorts_across_milliseconds(self):
        a = generate("mem", at_ms=1_700_000_000_000)
        b = generate("mem", at_ms=1_700_000_000_001)
        c = generate("mem", at_ms=1_800_000_000_000)
        assert sorted([c, a, b]) == [a, b, c]

    def test_sorts_in_generation_order(self):
        ids = []
        for _ in range(5):
            ids.append(generate("prov"))
            time.sleep(0.002)
        assert sorted(ids) == ids


class TestTimestamp:
    def test_roundtrip_explicit(self):
        assert timestamp_of(generate(at_ms=123456789)) == 123456789

    def test_close_to_now(self):
        before = now_ms()
        ts = timestamp_of(generate("mem"))
        after = now_ms()
        assert before <= ts <= after

    def test_encode_time_padding(self):
        assert encode_time(0) == "0" * 10
        assert encode_time(31) == "000000000Z"

    def test_encode_time_out_of_range(self):
        with pytest.raises(ValueError):
            encode_time(-1)

    def test_too_short(self):
        with pytest.raises(InvalidIdentifier):
            timestamp_of("mem_ABC")

    def test_bad_character(self):
        with pytest.raises(InvalidIdentifier):
            timestamp_of("mem_UUUUUUUUUU0000000000000000")

    def test_not_a_string(self):
        with pytest.raises(InvalidIdentifier):
            timestamp_of(12345)

    def test_is_valid_id(self):
        assert not is_valid_id("mem_short")
        assert not is_valid_id("mem_" + "I" * ID_LEN)
