from __future__ import annotations

import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from payrecon.utils.signature import (
    SIGNATURE_TOLERANCE_SECONDS,
    build_signature_header,
    compute_signature,
    verify_signature,
)

SECRET = "whsec_test"
PAYLOAD = b'{"id":"evt_1","name":"payment_intent.succeeded","data":{"object":{"id":"int_1"}}}'
NOW = 1_700_000_000


def test_fixed_vector() -> None:
    # hmac-sha256("whsec_test", "1700000000." + PAYLOAD)
    digest = compute_signature(SECRET, PAYLOAD, NOW)
    assert len(digest) == 64
    assert verify_signature(f"t={NOW},v1={digest}", SECRET, PAYLOAD, now=NOW)


def test_single_byte_mutations_fail() -> None:
    header = build_signature_header(SECRET, PAYLOAD, NOW)
    digest = header.split("v1=")[1]
    flipped = ("0" if digest[0] != "0" else "1") + digest[1:]
    assert not verify_signature(f"t={NOW},v1={flipped}", SECRET, PAYLOAD, now=NOW)
    assert not verify_signature(header, SECRET, PAYLOAD[:-1] + b" ", now=NOW)
    assert not verify_signature(header, SECRET + "x", PAYLOAD, now=NOW)


def test_reserialized_body_fails() -> None:
    header = build_signature_header(SECRET, PAYLOAD, NOW)
    reformatted = PAYLOAD.replace(b",", b", ")
    assert not verify_signature(header, SECRET, reformatted, now=NOW)


def test_timestamp_window() -> None:
    header = build_signature_header(SECRET, PAYLOAD, NOW)
    assert verify_signature(header, SECRET, PAYLOAD, now=NOW + SIGNATURE_TOLERANCE_SECONDS)
    assert verify_signature(header, SECRET, PAYLOAD, now=NOW - SIGNATURE_TOLERANCE_SECONDS)
    assert not verify_signature(header, SECRET, PAYLOAD, now=NOW + SIGNATURE_TOLERANCE_SECONDS + 1)
    assert not verify_signature(header, SECRET, PAYLOAD, now=NOW - SIGNATURE_TOLERANCE_SECONDS - 1)


def test_rotated_secret_with_multiple_v1_values() -> None:
    good = compute_signature(SECRET, PAYLOAD, NOW)
    old = compute_signature("whsec_old", PAYLOAD, NOW)
    assert verify_signature(f"t={NOW},v1={old},v1={good}", SECRET, PAYLOAD, now=NOW)


def test_malformed_headers_return_false() -> None:
    digest = compute_signature(SECRET, PAYLOAD, NOW)
    for header in (
        "",
        None,
        f"v1={digest}",
        f"t={NOW}",
        f"t=abc,v1={digest}",
        "garbage",
        f"t={NOW};v1={digest}",
        ",,,",
    ):
        assert verify_signature(header, SECRET, PAYLOAD, now=NOW) is False
    assert verify_signature(f"t={NOW},v1={digest}", "", PAYLOAD, now=NOW) is False


def test_timestamp_must_be_plain_digits() -> None:
    # Each variant is signed over its own text, so only the format check can reject it.
    for raw in ("1_700_000_000", "+1700000000", " 1700000000", "1700000000 ", "１７００００００００"):
        digest = compute_signature(SECRET, PAYLOAD, raw)
        assert verify_signature(f"t={raw},v1={digest}", SECRET, PAYLOAD, now=NOW) is False


def test_timestamp_is_signed_as_received() -> None:
    digest = compute_signature(SECRET, PAYLOAD, f"0{NOW}")
    assert verify_signature(f"t=0{NOW},v1={digest}", SECRET, PAYLOAD, now=NOW)
    assert verify_signature(f"t={NOW},v1={digest}", SECRET, PAYLOAD, now=NOW) is False
