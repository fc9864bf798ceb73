"""Unit tests for protocol frames and the frame codec."""

import itertools
import json

import pytest
from pydantic import ValidationError

from webview_rpc.protocol import DecodeError, ErrorInfo, Frame, FrameKind, decode, encode
from webview_rpc.protocol.codec import RAW_PREVIEW_LIMIT

# =============================================================================
# Frame construction
# =============================================================================


class TestFrameCreation:
    """Test Frame factories and per-kind field rules."""

    def test_request_factory(self):
        """request() should set service, method and payload."""
        frame = Frame.request(7, "cline.UiService", "scrollToSettings", {"value": "models"})

        assert frame.kind == FrameKind.REQUEST
        assert frame.call_id == 7
        assert frame.service == "cline.UiService"
        assert frame.method == "scrollToSettings"
        assert frame.payload == {"value": "models"}
        assert frame.error is None

    def test_error_response_factory(self):
        """error_response() should carry the error and no payload."""
        frame = Frame.error_response(3, ErrorInfo(code="TIMEOUT", message="late"))

        assert frame.kind == FrameKind.RESPONSE
        assert frame.is_error is True
        assert frame.payload is None

    def test_request_requires_service_and_method(self):
        """A request without a method should be rejected."""
        with pytest.raises(ValidationError):
            Frame(kind=FrameKind.REQUEST, call_id=1, service="cline.UiService")

    def test_non_request_rejects_service(self):
        """Only requests may name a service."""
        with pytest.raises(ValidationError):
            Frame(kind=FrameKind.RESPONSE, call_id=1, service="cline.UiService")

    def test_stream_error_requires_error(self):
        """A stream_error frame without error info is invalid."""
        with pytest.raises(ValidationError):
            Frame(kind=FrameKind.STREAM_ERROR, call_id=1)

    def test_cancel_rejects_error(self):
        """Error info is only allowed on response and stream_error."""
        with pytest.raises(ValidationError):
            Frame(kind=FrameKind.CANCEL, call_id=1, error=ErrorInfo(code="X", message="x"))

    def test_negative_call_id_rejected(self):
        """Call ids are non-negative."""
        with pytest.raises(ValidationError):
            Frame.cancel(-1)

    def test_frames_are_immutable(self):
        """Frames should be frozen."""
        frame = Frame.cancel(1)
        with pytest.raises(ValidationError):
            frame.call_id = 2

    def test_terminal_kinds(self):
        """response, stream_end and stream_error end a call."""
        assert Frame.response(1).is_terminal is True
        assert Frame.stream_end(1).is_terminal is True
        assert Frame.stream_error(1, ErrorInfo(code="X", message="x")).is_terminal is True
        assert Frame.stream_event(1, {}).is_terminal is False
        assert Frame.cancel(1).is_terminal is False

    def test_describe(self):
        """describe() should be short and include the call id."""
        assert Frame.request(4, "svc", "m").describe() == "request#4 svc/m"
        assert Frame.stream_end(4).describe() == "stream_end#4"
        error = ErrorInfo(code="HANDLER_ERROR", message="boom")
        assert Frame.stream_error(4, error).describe() == "stream_error#4 [HANDLER_ERROR]"


# =============================================================================
# Encoding
# =============================================================================


class TestEncode:
    """Test deterministic compact encoding."""

    def test_request_wire_format(self):
        """Requests encode as compact JSON in field order."""
        frame = Frame.request(7, "cline.UiService", "scrollToSettings", {"value": "models"})

        assert encode(frame) == (
            b'{"kind":"request","call_id":7,"service":"cline.UiService",'
            b'"method":"scrollToSettings","payload":{"value":"models"}}'
        )

    def test_absent_fields_omitted(self):
        """Fields that are None are not written."""
        assert encode(Frame.stream_end(3)) == b'{"kind":"stream_end","call_id":3}'
        assert encode(Frame.cancel(9)) == b'{"kind":"cancel","call_id":9}'

    def test_error_without_details(self):
        """Error info omits details when there are none."""
        frame = Frame.error_response(4, ErrorInfo(code="TIMEOUT", message="late"))

        assert encode(frame) == (
            b'{"kind":"response","call_id":4,"error":{"code":"TIMEOUT","message":"late"}}'
        )

    def test_error_with_details(self):
        """Error details are kept when present."""
        error = ErrorInfo(code="INVALID_PAYLOAD", message="bad", details={"field": "value"})
        data = json.loads(encode(Frame.stream_error(2, error)))

        assert data["error"]["details"] == {"field": "value"}

    def test_encoding_is_deterministic(self):
        """Encoding the same frame twice yields identical bytes."""
        frame = Frame.stream_event(5, {"b": 1, "a": [1, 2, {"c": None}]})

        assert encode(frame) == encode(frame)
        assert encode(frame) == encode(decode(encode(frame)))

    def test_no_raw_newlines(self):
        """Encoded frames never contain a raw newline."""
        frame = Frame.stream_event(1, {"value": "line one\nline two"})

        assert b"\n" not in encode(frame)

    def test_non_ascii_payload(self):
        """Non-ASCII text survives encoding."""
        frame = Frame.stream_event(1, {"value": "héllo ✓"})

        assert decode(encode(frame)) == frame


# =============================================================================
# Round trips
# =============================================================================

PAYLOADS = [
    None,
    True,
    0,
    -1,
    2**53,
    -(2**53),
    3.5,
    -0.0,
    1e-300,
    1.7976931348623157e308,
    "",
    "plain",
    "héllo ✓",
    "emoji 🎉 and 𝄞",
    'quote " backslash \\ slash /',
    "control \x00\x01\x1f tab\t cr\r nl\n",
    "\u2028\u2029 separators",
    "\ufeff leading bom",
    [],
    {},
    [1, "two", 3.5, None, False],
    {"": "", "ü": [], "a": {"b": {"c": [{"d": None}]}}},
    {"value": [[[]], [{}], [[["deep"]]]]},
]

ERRORS = [
    ErrorInfo(code="HANDLER_ERROR", message="boom"),
    ErrorInfo(code="", message=""),
    ErrorInfo(code="APP_DENIED", message="nein ✗", details={}),
    ErrorInfo(code="X", message="x", details={"errors": [{"loc": ["a", 0]}], "n": None}),
]

EXTRAS = [
    {},
    {"trace": "abc"},
    {"meta": {"hops": [1, 2], "note": "é"}, "flag": False, "zz": None},
]


def generated_frames():
    """Frames of every kind with a spread of payloads, errors and extra fields."""
    call_ids = itertools.cycle([0, 1, 7, 2**31 - 1, 2**53 + 1])
    for payload, extra in itertools.product(PAYLOADS, EXTRAS):
        yield Frame.request(next(call_ids), "cline.UiService", "subscribeToAddToInput", payload)
        yield Frame.response(next(call_ids), payload)
        yield Frame.stream_event(next(call_ids), payload)
        for frame in (
            Frame.request(next(call_ids), "svc ✓", "m", payload),
            Frame.stream_end(next(call_ids)),
            Frame.cancel(next(call_ids)),
        ):
            yield frame.model_copy(update=extra)
    for error, extra in itertools.product(ERRORS, EXTRAS):
        yield Frame.error_response(next(call_ids), error).model_copy(update=extra)
        yield Frame.stream_error(next(call_ids), error).model_copy(update=extra)


class TestRoundTrip:
    """Test that every frame survives encode then decode."""

    def test_generated_frames(self):
        """decode(encode(frame)) == frame across kinds, payloads and extras."""
        frames = list(generated_frames())
        assert {frame.kind for frame in frames} == set(FrameKind)

        for frame in frames:
            data = encode(frame)
            decoded = decode(data)

            assert decoded == frame, data
            assert decoded.model_extra == frame.model_extra
            assert encode(decoded) == data
            assert b"\n" not in data

    def test_text_and_bytes_agree(self):
        """Decoding the str form gives the same frame as decoding bytes."""
        for frame in generated_frames():
            data = encode(frame)
            assert decode(data.decode("utf-8")) == decode(data)


# =============================================================================
# Decoding
# =============================================================================


class TestDecode:
    """Test total decoding."""

    def test_decode_text(self):
        """decode() also accepts str."""
        frame = decode('{"kind":"cancel","call_id":1}')

        assert frame == Frame.cancel(1)

    def test_bom_is_stripped(self):
        """A leading UTF-8 BOM is ignored."""
        frame = decode(b"\xef\xbb\xbf" + encode(Frame.cancel(2)))

        assert frame == Frame.cancel(2)

    def test_invalid_utf8(self):
        """Invalid UTF-8 comes back as a DecodeError."""
        result = decode(b"\xff\xfe{}")

        assert isinstance(result, DecodeError)
        assert result.reason.startswith("Invalid UTF-8")

    def test_invalid_json(self):
        """Malformed JSON comes back as a DecodeError."""
        result = decode(b"{not json")

        assert isinstance(result, DecodeError)
        assert result.reason.startswith("Invalid JSON")
        assert result.raw == "{not json"

    def test_non_object(self):
        """A JSON array is not a frame."""
        result = decode(b"[1, 2]")

        assert isinstance(result, DecodeError)
        assert "list" in result.reason

    def test_unknown_kind_keeps_call_id(self):
        """Schema errors still report the call id when it is readable."""
        result = decode(b'{"kind":"bogus","call_id":5}')

        assert isinstance(result, DecodeError)
        assert result.call_id == 5
        assert "kind" in result.reason

    def test_missing_call_id(self):
        """A frame without call_id is rejected and reports no id."""
        result = decode(b'{"kind":"cancel"}')

        assert isinstance(result, DecodeError)
        assert result.call_id is None

    def test_deep_nesting_does_not_raise(self):
        """Pathologically nested input is reported, not raised."""
        result = decode(b"[" * 100_000)

        assert isinstance(result, DecodeError)

    def test_raw_preview_truncated(self):
        """Long bad input is truncated in the preview."""
        result = decode("x" * 1000)

        assert isinstance(result, DecodeError)
        assert len(result.raw) == RAW_PREVIEW_LIMIT
        assert result.raw.endswith("...")

    def test_unknown_fields_preserved(self):
        """Unknown top-level fields survive a decode/encode cycle."""
        frame = decode(b'{"kind":"cancel","call_id":1,"trace":"abc"}')

        assert isinstance(frame, Frame)
        assert frame.model_extra == {"trace": "abc"}
        assert json.loads(encode(frame))["trace"] == "abc"


# =============================================================================
# Values that cannot be written back out
# =============================================================================


class TestUnencodableValues:
    """Test that a frame which cannot be encoded can neither be built nor decoded."""

    @pytest.mark.parametrize(
        "build",
        [
            lambda: Frame.request(1, "s", "m", "\ud800"),
            lambda: Frame.request(1, "s", "m", {"nested": ["ok", "\udfff"]}),
            lambda: Frame.request(1, "s", "m", {"\ud800": 1}),
            lambda: Frame.request(1, "s\ud800", "m"),
            lambda: Frame.response(1, float("nan")),
            lambda: Frame.stream_event(1, [float("inf")]),
            lambda: ErrorInfo(code="X", message="bad \ud800"),
            lambda: ErrorInfo(code="X", message="x", details={"v": "\udc80"}),
        ],
    )
    def test_construction_rejected(self, build):
        """Lone surrogates and non-finite numbers are rejected when building."""
        with pytest.raises(ValidationError):
            build()

    def test_extra_field_must_be_json(self):
        """Unknown fields must hold encodable JSON."""
        with pytest.raises(ValidationError):
            Frame(kind=FrameKind.CANCEL, call_id=1, trace=object())
        with pytest.raises(ValidationError):
            Frame(kind=FrameKind.CANCEL, call_id=1, trace="\ud800")

    @pytest.mark.parametrize(
        "data",
        [
            b'{"kind":"request","call_id":1,"service":"s","method":"m","payload":"\\ud800"}',
            b'{"kind":"response","call_id":2,"payload":{"a":["\\udfff"]}}',
            b'{"kind":"cancel","call_id":3,"\\ud800":1}',
            b'{"kind":"stream_error","call_id":4,"error":{"code":"X","message":"\\ud83d"}}',
        ],
    )
    def test_escaped_lone_surrogate_rejected(self, data):
        """Escaped lone surrogates decode to a DecodeError, not a frame."""
        result = decode(data)

        assert isinstance(result, DecodeError)
        assert "\\u" in result.raw
        result.raw.encode("utf-8")

    def test_escaped_surrogate_pair_accepted(self):
        """A correctly paired escape is ordinary text."""
        frame = decode(b'{"kind":"response","call_id":1,"payload":"\\ud83c\\udf89"}')

        assert frame == Frame.response(1, "\U0001f389")

    @pytest.mark.parametrize(
        "data",
        [
            b'{"kind":"response","call_id":1,"payload":NaN}',
            b'{"kind":"response","call_id":1,"payload":[Infinity]}',
            b'{"kind":"response","call_id":1,"payload":{"n":-Infinity}}',
            b'{"kind":"response","call_id":1,"payload":1e999}',
        ],
    )
    def test_non_finite_numbers_rejected(self, data):
        """NaN, Infinity and overflowing numbers are not valid frames."""
        assert isinstance(decode(data), DecodeError)

    def test_every_decoded_frame_encodes(self):
        """A frame that decodes always encodes again."""
        data = b'{"kind":"stream_event","call_id":5,"payload":{"text":"\\u00e9\\u2028"}}'
        frame = decode(data)

        assert isinstance(frame, Frame)
        assert decode(encode(frame)) == frame
