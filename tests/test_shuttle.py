import json
import math
import sys
from datetime import datetime, timezone

import numpy as np
import pytest

import shuttle
from binary_encoder import encode_item, encode_string
from crypto_utils import compute_digest
from shuttle import Shuttle, deserialize, serialize, to_jsonable
from shuttle_types import (
    DIGEST_FIELD_SIZE, INVALID_TIMESTAMP, UNDEFINED, Int64, IntegrityError,
    ShuttleError, TruncatedBufferError, UInt64, UnknownEncodingError,
    UnsupportedValueError, ValueMap,
)

UTC = timezone.utc

VALUES = [
    None,
    UNDEFINED,
    True,
    False,
    0.0,
    -2.75,
    float("nan"),
    float("inf"),
    float("-inf"),
    Int64(-(1 << 63)),
    UInt64((1 << 64) - 1),
    "",
    "héllo wörld ✓",
    [],
    [1.0, "x", [None, [True]]],
    {},
    {"a": {"b": [1.0]}, "c": UNDEFINED},
    {1.5, "s", (1.0, 2.0)},
    ValueMap({1.0: "one", "k": [True], None: {}}),
    datetime(2024, 5, 17, 12, 30, 45, 123000, tzinfo=UTC),
    datetime(1900, 1, 1, tzinfo=UTC),
    INVALID_TIMESTAMP,
    np.array([1, 2, 3], dtype=np.uint8),
    np.array([1, 2, 3], dtype=np.uint16),
    np.array([1, 2, 3], dtype=np.uint32),
    np.array([], dtype=np.uint16),
    {
        "when": datetime(2000, 1, 1, tzinfo=UTC),
        "never": INVALID_TIMESTAMP,
        "blob": np.array([65535, 0], dtype=np.uint16),
        "ids": [Int64(-1), UInt64(1)],
        "tags": {"x"},
        "index": ValueMap({(1.0, 2.0): [float("nan")]}),
    },
]

SALT_SEQUENCES = [[], [42], [1, -7, 2 ** 40]]


def assert_same(expected, actual):
    if isinstance(expected, np.ndarray):
        assert isinstance(actual, np.ndarray)
        assert actual.dtype == expected.dtype
        assert actual.tolist() == expected.tolist()
    elif isinstance(expected, float) and math.isnan(expected):
        assert isinstance(actual, float) and math.isnan(actual)
    elif isinstance(expected, (list, tuple)):
        assert isinstance(actual, list)
        assert len(actual) == len(expected)
        for left, right in zip(expected, actual):
            assert_same(left, right)
    elif isinstance(expected, dict):
        assert type(actual) is type(expected)
        assert list(actual) == list(expected)
        for key in expected:
            assert_same(expected[key], actual[key])
    else:
        assert actual == expected
        assert type(actual) is type(expected)


# =============================
# ROUND TRIP
# =============================

@pytest.mark.parametrize("digest", [False, True])
@pytest.mark.parametrize("salts", SALT_SEQUENCES)
@pytest.mark.parametrize("value", VALUES)
def test_round_trip(value, salts, digest):
    data = serialize(value, salts=salts, digest=digest)
    assert isinstance(data, bytes)
    assert_same(value, deserialize(data, salts=salts, digest=digest))


def test_negative_zero_survives():
    value = deserialize(serialize(-0.0, salts=[3], digest=True), salts=[3], digest=True)
    assert math.copysign(1.0, value) == -1.0


def test_scenario_numbers_decode_as_float():
    data = serialize({"a": 1, "b": [True, None]}, salts=[], digest=False)
    value = deserialize(data)
    assert value == {"a": 1.0, "b": [True, None]}
    assert isinstance(value["a"], float)


def test_charset_option():
    data = serialize({"k": "héllo"}, encoding="latin-1")
    assert b"h\xe9llo" in data
    assert deserialize(data, encoding="latin-1") == {"k": "héllo"}


@pytest.mark.parametrize("value", [[], {}, set(), ValueMap()])
def test_empty_containers_are_two_bytes(value):
    data = serialize(value)
    assert len(data) == 2
    assert deserialize(data) == value


def test_fixed_width_arrays_keep_width():
    for dtype in (np.uint8, np.uint16, np.uint32):
        value = deserialize(serialize(np.array([1, 2, 3], dtype=dtype), salts=[9]), salts=[9])
        assert value.dtype == np.dtype(dtype)
        assert value.tolist() == [1, 2, 3]


def test_invalid_timestamp_round_trip():
    value = deserialize(serialize(INVALID_TIMESTAMP, salts=[1], digest=True),
                        salts=[1], digest=True)
    assert value is INVALID_TIMESTAMP


# =============================
# DIGEST
# =============================

def test_digest_field_layout():
    value = {"a": [1.0, "b"]}
    payload = encode_item(value)
    data = serialize(value, digest=True)

    assert data[:DIGEST_FIELD_SIZE] == encode_string(compute_digest(payload))
    assert data[DIGEST_FIELD_SIZE:] == payload
    assert data[0] == 12
    assert data[DIGEST_FIELD_SIZE - 1] == 0


@pytest.mark.parametrize("salts", [[], [5], [5, 6]])
def test_tamper_detection(salts):
    value = {"user": "alice", "scores": [1.0, 2.5], "at": datetime(2020, 1, 1, tzinfo=UTC)}
    data = serialize(value, salts=salts, digest=True)

    for index in range(len(data)):
        tampered = bytearray(data)
        tampered[index] ^= 0xFF
        with pytest.raises(ShuttleError):
            deserialize(bytes(tampered), salts=salts, digest=True)


def test_payload_tamper_is_integrity_error():
    data = bytearray(serialize(["payload"], digest=True))
    data[-3] ^= 0x01
    with pytest.raises(IntegrityError):
        deserialize(bytes(data), digest=True)


def test_wrong_salts_rejected_with_digest():
    data = serialize({"secret": "value"}, salts=[1, 2], digest=True)
    with pytest.raises(ShuttleError):
        deserialize(data, salts=[2, 1], digest=True)


def test_missing_digest_field_rejected():
    data = serialize("x" * 50)
    with pytest.raises(IntegrityError):
        deserialize(data, digest=True)


def test_short_buffer_with_digest():
    with pytest.raises(TruncatedBufferError):
        deserialize(b"\x00", digest=True)


def test_unknown_charset_rejected():
    with pytest.raises(UnknownEncodingError):
        serialize("x", encoding="bogus")
    with pytest.raises(UnknownEncodingError):
        deserialize(b"\x0cx\x00", encoding="bogus")
    with pytest.raises(ShuttleError):
        Shuttle(encoding="bogus")


# =============================
# ERRORS
# =============================

def test_unsupported_value():
    with pytest.raises(UnsupportedValueError):
        serialize(object())
    with pytest.raises(UnsupportedValueError):
        serialize({"callback": len}, salts=[1], digest=True)


def test_empty_input():
    with pytest.raises(TruncatedBufferError):
        deserialize(b"")


def test_max_depth_option():
    data = serialize([[[[]]]])
    assert deserialize(data, max_depth=4) == [[[[]]]]
    with pytest.raises(ShuttleError):
        deserialize(data, max_depth=3)


# =============================
# FACADE
# =============================

def test_shuttle_instance_reuse():
    codec = Shuttle(salts=[11, 12], digest=True)
    first = codec.serialize([1.0])
    second = codec.serialize({"k": "v"})
    assert codec.deserialize(first) == [1.0]
    assert codec.deserialize(second) == {"k": "v"}


def test_verbose_logging(capsys):
    codec = Shuttle(salts=[3], digest=True, verbose=True)
    codec.deserialize(codec.serialize({"a": 1}))

    out = capsys.readouterr().out
    assert "[INFO] Encoded dict" in out
    assert "✓ MD5 verified" in out


def test_quiet_by_default(capsys):
    deserialize(serialize([1.0], digest=True), digest=True)
    assert capsys.readouterr().out == ""


# =============================
# JSON BRIDGE
# =============================

def test_to_jsonable():
    value = {
        "a": UNDEFINED,
        "b": INVALID_TIMESTAMP,
        "c": datetime(2020, 1, 1, tzinfo=UTC),
        "d": np.array([1, 2], dtype=np.uint16),
        "e": {"x"},
        "f": ValueMap({1.0: "one"}),
        "g": ValueMap({"k": True}),
        "h": Int64(5),
    }
    assert to_jsonable(value) == {
        "a": None,
        "b": None,
        "c": "2020-01-01T00:00:00+00:00",
        "d": [1, 2],
        "e": ["x"],
        "f": [[1.0, "one"]],
        "g": {"k": True},
        "h": 5,
    }
    json.dumps(to_jsonable(value))


# =============================
# CLI
# =============================

def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["shuttle", *argv])
    shuttle.main()


def test_cli_encode_decode(tmp_path, monkeypatch):
    document = {"name": "doc", "values": [1, 2.5, None, True], "nested": {"k": "v"}}
    source = tmp_path / "in.json"
    source.write_text(json.dumps(document), encoding="utf-8")
    packed = tmp_path / "out.bin"
    restored = tmp_path / "restored.json"

    run_cli(monkeypatch, "encode", str(source), "--output", str(packed),
            "--salt", "4", "--salt", "8", "--digest", "--quiet")
    data = packed.read_bytes()
    assert deserialize(data, salts=[4, 8], digest=True) == document

    run_cli(monkeypatch, "decode", str(packed), "--output", str(restored),
            "--salt", "4", "--salt", "8", "--digest", "--quiet")
    assert json.loads(restored.read_text(encoding="utf-8")) == document


def test_cli_base64(tmp_path, monkeypatch):
    source = tmp_path / "in.json"
    source.write_text(json.dumps(["a", 1]), encoding="utf-8")
    packed = tmp_path / "out.txt"
    restored = tmp_path / "restored.json"

    run_cli(monkeypatch, "encode", str(source), "--output", str(packed), "--base64", "--quiet")
    text = packed.read_text(encoding="ascii")
    assert "=" not in text and "+" not in text and "/" not in text

    run_cli(monkeypatch, "decode", str(packed), "--output", str(restored), "--base64", "--quiet")
    assert json.loads(restored.read_text(encoding="utf-8")) == ["a", 1.0]


def test_cli_info(tmp_path, monkeypatch, capsys):
    packed = tmp_path / "data.bin"
    packed.write_bytes(serialize([1.0, 2.0], digest=True))

    run_cli(monkeypatch, "info", str(packed), "--digest")
    out = capsys.readouterr().out
    assert "PAYLOAD INFORMATION" in out
    assert "Digest: verified" in out
    assert "list (2 items)" in out


def test_cli_error_exit(tmp_path, monkeypatch, capsys):
    packed = tmp_path / "data.bin"
    packed.write_bytes(serialize("x" * 50))

    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch, "decode", str(packed), "--output", str(tmp_path / "o.json"),
                "--digest", "--quiet")
    assert exc.value.code == 1
    assert "[ERROR]" in capsys.readouterr().err


def test_cli_unknown_charset(tmp_path, monkeypatch, capsys):
    source = tmp_path / "in.json"
    source.write_text(json.dumps({"k": "v"}), encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch, "encode", str(source), "--output", str(tmp_path / "o.bin"),
                "--encoding", "bogus", "--quiet")
    assert exc.value.code == 1
    assert "[ERROR] Unknown text encoding: bogus" in capsys.readouterr().err
    assert not (tmp_path / "o.bin").exists()
