"""Tests for the JSON frame codec."""

from __future__ import annotations

import json

import pytest

from termrelay.domain.errors import DecodeError
from termrelay.domain.models import (
    ErrorFrame,
    InputFrame,
    OutputFrame,
    ResizeFrame,
    StatusFrame,
)
from termrelay.protocol.codec import OutputDecoder, decode, encode, try_decode


class TestEncode:
    def test_input_wire_form(self) -> None:
        assert json.loads(encode(InputFrame(data="ls\n"))) == {"type": "input", "data": "ls\n"}

    def test_resize_wire_form(self) -> None:
        assert json.loads(encode(ResizeFrame(cols=120, rows=40))) == {
            "type": "resize", "cols": 120, "rows": 40,
        }

    def test_server_frames_carry_their_tag(self) -> None:
        assert json.loads(encode(OutputFrame(data="$ ")))["type"] == "output"
        assert json.loads(encode(StatusFrame(message="connected")))["type"] == "status"
        assert json.loads(encode(ErrorFrame(message="boom")))["type"] == "error"

    def test_control_bytes_survive(self) -> None:
        frame = OutputFrame(data="\x1b[31mred\x1b[0m\r\n")
        assert decode(encode(frame)) == frame


class TestDecode:
    def test_input(self) -> None:
        assert decode('{"type": "input", "data": "x"}') == InputFrame(data="x")

    def test_resize(self) -> None:
        assert decode('{"type": "resize", "cols": 80, "rows": 24}') == ResizeFrame(cols=80, rows=24)

    def test_accepts_bytes(self) -> None:
        assert decode(b'{"type": "status", "message": "connected"}') == StatusFrame(message="connected")

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(DecodeError, match="seq"):
            decode('{"type": "input", "data": "x", "seq": 3}')

    def test_extra_fields_rejected_on_server_frames(self) -> None:
        assert isinstance(try_decode('{"type": "status", "message": "ok", "code": 1}'), DecodeError)

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "",
            "[1, 2]",
            '"input"',
            '{"data": "x"}',
            '{"type": "bogus", "data": "x"}',
            '{"type": "input"}',
            '{"type": "input", "data": 5}',
            '{"type": "resize", "cols": "80", "rows": 24}',
            '{"type": "resize", "cols": 0, "rows": 24}',
            '{"type": "resize", "cols": 80, "rows": -1}',
            '{"type": "status"}',
        ],
    )
    def test_malformed_raises_decode_error(self, raw: str) -> None:
        with pytest.raises(DecodeError) as exc_info:
            decode(raw)
        assert str(exc_info.value).startswith("Invalid frame")
        assert exc_info.value.raw == raw

    def test_try_decode_returns_error(self) -> None:
        result = try_decode('{"type": "nope"}')
        assert isinstance(result, DecodeError)

    def test_try_decode_returns_frame(self) -> None:
        assert try_decode('{"type": "error", "message": "x"}') == ErrorFrame(message="x")


class TestOutputDecoder:
    def test_ascii_passthrough(self) -> None:
        decoder = OutputDecoder()
        assert decoder.feed(b"$ ls\r\n") == "$ ls\r\n"

    def test_split_multibyte_character(self) -> None:
        decoder = OutputDecoder()
        euro = "€".encode("utf-8")
        assert decoder.feed(euro[:2]) == ""
        assert decoder.feed(euro[2:] + b"!") == "€!"

    def test_invalid_bytes_replaced(self) -> None:
        decoder = OutputDecoder()
        assert decoder.feed(b"a\xffb") == "a\ufffdb"

    def test_flush_reports_dangling_sequence(self) -> None:
        decoder = OutputDecoder()
        decoder.feed(b"\xe2\x82")
        assert decoder.flush() == "\ufffd"
        assert decoder.flush() == ""
