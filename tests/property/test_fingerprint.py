"""Property-based tests for fingerprint stability and uniqueness."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

pytest.importorskip("hypothesis")
from hypothesis import assume, given, settings  # type: ignore  # noqa: E402
from hypothesis import strategies as st

from contracts.artifacts import ArtifactKind
from contracts.fingerprints import artifact_fingerprint, canonical_json_dumps, content_fingerprint, positional_fingerprint

_ARTIFACT_FP = st.from_regex(r"[0-9a-f]{64}", fullmatch=True)
_SEQUENCE = st.integers(min_value=0, max_value=2**40)
_KIND = st.sampled_from(list(ArtifactKind))
_FIELD_VALUE = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(2**53), max_value=2**53),
    st.text(max_size=32),
    st.binary(max_size=32),
)
_FIELDS = st.dictionaries(keys=st.from_regex(r"[a-z_]{1,20}", fullmatch=True), values=_FIELD_VALUE, max_size=8)
_TIMESTAMP = st.one_of(
    st.none(),
    st.datetimes(min_value=datetime(1980, 1, 1), max_value=datetime(2100, 1, 1), timezones=st.just(UTC)),
)


@settings(max_examples=200, deadline=None, database=None)
@given(artifact_fp=_ARTIFACT_FP, seq=_SEQUENCE)
def test_positional_fingerprint_deterministic(artifact_fp: str, seq: int) -> None:
    """Same artifact and position must always produce the same fingerprint."""
    fp1 = positional_fingerprint(artifact_fp, seq)
    fp2 = positional_fingerprint(artifact_fp, seq)
    assert fp1 == fp2
    assert len(fp1) == 64


@settings(max_examples=200, deadline=None, database=None)
@given(artifact_fp=_ARTIFACT_FP, seq_a=_SEQUENCE, seq_b=_SEQUENCE)
def test_positional_fingerprint_distinguishes_positions(artifact_fp: str, seq_a: int, seq_b: int) -> None:
    """Two positions inside one artifact must not collide."""
    assume(seq_a != seq_b)
    assert positional_fingerprint(artifact_fp, seq_a) != positional_fingerprint(artifact_fp, seq_b)


@settings(max_examples=200, deadline=None, database=None)
@given(kind=_KIND, fields=_FIELDS, ts=_TIMESTAMP)
def test_content_fingerprint_independent_of_field_order(kind: ArtifactKind, fields: dict, ts: datetime | None) -> None:
    """Field insertion order must not change the content fingerprint."""
    reversed_fields = dict(reversed(list(fields.items())))
    fp1 = content_fingerprint(kind, fields, ts)
    fp2 = content_fingerprint(kind, reversed_fields, ts)
    assert fp1 == fp2
    assert len(fp1) == 64


@settings(max_examples=200, deadline=None, database=None)
@given(kind=_KIND, fields=_FIELDS, ts=_TIMESTAMP, key=st.from_regex(r"[a-z_]{1,20}", fullmatch=True))
def test_content_fingerprint_changes_with_content(kind: ArtifactKind, fields: dict, ts: datetime | None, key: str) -> None:
    """Changing one field value must change the fingerprint."""
    changed = dict(fields)
    changed[key] = ["changed"]
    assert content_fingerprint(kind, fields, ts) != content_fingerprint(kind, changed, ts)


@settings(max_examples=100, deadline=None, database=None)
@given(data=st.binary(max_size=4096))
def test_artifact_fingerprint_matches_for_bytes_and_views(data: bytes) -> None:
    """Hashing a memoryview must give the same digest as hashing the bytes."""
    assert artifact_fingerprint(data) == artifact_fingerprint(memoryview(data))


@settings(max_examples=200, deadline=None, database=None)
@given(fields=_FIELDS)
def test_canonical_json_is_order_insensitive(fields: dict) -> None:
    """Canonical JSON must not depend on dict insertion order."""
    assert canonical_json_dumps(fields) == canonical_json_dumps(dict(reversed(list(fields.items()))))
