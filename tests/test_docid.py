"""Tests for the document identifier codec."""

import base64
from datetime import date, datetime, time
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from db_feed.core.docid import (
    DEFAULT_ORDERING,
    DocIdError,
    DocIdType,
    ValueOrdering,
    compare_docids,
    decode_docid,
    docid_sort_key,
    encode_docid,
    generate_docid,
    is_legacy_docid,
)

# Text quote_plus can encode; lone surrogates have no UTF-8 form
text_values = st.text(alphabet=st.characters(blacklist_categories=("Cs",)))

key_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(),
    st.floats(allow_nan=False, allow_infinity=False),
    st.decimals(allow_nan=False, allow_infinity=False),
    text_values,
    st.datetimes(),
    st.dates(),
    st.times(),
)


class TestEncode:
    """Test encode_docid()."""

    def test_layout(self) -> None:
        assert encode_docid([10, "hello world"]) == "BF/10/hello+world"

    def test_slash_in_string_is_escaped(self) -> None:
        assert encode_docid(["a/b"]) == "F/a%2Fb"

    def test_type_tags(self) -> None:
        """Test each Python type gets its tag."""
        assert encode_docid([None]) == "A/"
        assert encode_docid([True]) == "K/true"
        assert encode_docid([2**70]) == f"D/{2**70}"
        assert encode_docid([1.5]) == "C/1.5"
        assert encode_docid([date(2024, 1, 2)]) == "I/2024-01-02"
        assert encode_docid([time(3, 4, 5)]) == "J/03:04:05"
        assert encode_docid([datetime(2024, 1, 2, 3, 4, 5)]) == "H/2024-01-02 03:04:05"

    def test_big_decimal_drops_plus(self) -> None:
        docid = encode_docid([Decimal("1E+20")])
        assert docid == "E/1E20"
        assert decode_docid(docid) == (Decimal("1E+20"),)

    def test_no_values(self) -> None:
        with pytest.raises(DocIdError):
            encode_docid([])

    @given(st.lists(key_values, min_size=1, max_size=4))
    def test_round_trip(self, values: list) -> None:
        """Decoding gives back the encoded values."""
        assert decode_docid(encode_docid(values)) == tuple(values)

    @given(
        st.lists(st.one_of(st.integers(), text_values), min_size=1, max_size=3),
        st.lists(st.one_of(st.integers(), text_values), min_size=1, max_size=3),
    )
    def test_distinct_keys_distinct_ids(self, a: list, b: list) -> None:
        if a != b:
            assert encode_docid(a) != encode_docid(b)


class TestGenerate:
    """Test generate_docid()."""

    def test_key_order(self) -> None:
        row = {"rev": 2, "id": 7, "name": "x"}
        assert generate_docid(["id", "rev"], row) == "BB/7/2"

    def test_case_insensitive_keys(self) -> None:
        assert generate_docid(["ID"], {"id": 7}) == "B/7"

    def test_missing_key(self) -> None:
        with pytest.raises(DocIdError, match="not in the query result"):
            generate_docid(["id"], {"name": "x"})

    def test_no_keys(self) -> None:
        with pytest.raises(DocIdError):
            generate_docid([], {"id": 1})


class TestDecode:
    """Test decode_docid()."""

    def test_legacy(self) -> None:
        docid = base64.b64encode(b"10,abc").decode("ascii")
        assert is_legacy_docid(docid)
        assert decode_docid(docid) == ("10", "abc")

    def test_unknown_tag(self) -> None:
        with pytest.raises(DocIdError, match="Unknown type tag"):
            decode_docid("BX/1/2")

    def test_field_count_mismatch(self) -> None:
        with pytest.raises(DocIdError):
            decode_docid("BB/1")

    def test_bad_value(self) -> None:
        with pytest.raises(DocIdError):
            decode_docid("B/abc")

    def test_bad_bool(self) -> None:
        with pytest.raises(DocIdError):
            decode_docid("K/yes")

    def test_tag_codes_are_stable(self) -> None:
        assert [t.value for t in DocIdType] == list("ABCDEFGHIJK")


class TestCompare:
    """Test compare_docids() and docid_sort_key()."""

    def test_numeric_across_types(self) -> None:
        """10 < 10.5 < 11 even though the tags differ."""
        ids = [encode_docid([11]), encode_docid([10.5]), encode_docid([10])]
        assert sorted(ids, key=docid_sort_key()) == ["B/10", "C/10.5", "B/11"]

    def test_numbers_not_compared_as_text(self) -> None:
        assert compare_docids(DEFAULT_ORDERING, "B/9", "B/10") == -1

    def test_equal(self) -> None:
        assert compare_docids(DEFAULT_ORDERING, "BF/1/a", "BF/1/a") == 0

    def test_later_field_decides(self) -> None:
        assert compare_docids(DEFAULT_ORDERING, "BF/1/b", "BF/1/a") == 1

    def test_shorter_prefix_first(self) -> None:
        assert compare_docids(DEFAULT_ORDERING, "B/1", "BB/1/2") == -1

    def test_null_ordering(self) -> None:
        low = ValueOrdering(nulls_sorted_low=True)
        high = ValueOrdering(nulls_sorted_low=False)
        assert compare_docids(low, "A/", "B/1") == -1
        assert compare_docids(high, "A/", "B/1") == 1
        assert compare_docids(high, "B/1", "A/") == -1

    def test_legacy_sorts_after_typed(self) -> None:
        legacy = base64.b64encode(b"1").decode("ascii")
        assert compare_docids(DEFAULT_ORDERING, legacy, "F/zzz") == 1
        assert compare_docids(DEFAULT_ORDERING, "B/1", legacy) == -1
        assert compare_docids(DEFAULT_ORDERING, "MQ==", "Mg==") == -1

    def test_case_sensitivity(self) -> None:
        a, b = encode_docid(["abc"]), encode_docid(["ABC"])
        assert compare_docids(ValueOrdering(case_sensitive=True), a, b) == 1
        assert compare_docids(ValueOrdering(case_sensitive=False), a, b) == 0

    def test_accent_sensitivity(self) -> None:
        a, b = encode_docid(["café"]), encode_docid(["cafe"])
        assert compare_docids(ValueOrdering(accent_sensitive=True), a, b) != 0
        assert compare_docids(ValueOrdering(accent_sensitive=False), a, b) == 0

    def test_encoded_strings_compare_decoded(self) -> None:
        """Escaped strings are compared after decoding."""
        a, b = encode_docid(["a b"]), encode_docid(["a+b"])
        assert compare_docids(DEFAULT_ORDERING, a, b) == -1

    def test_dates(self) -> None:
        a = encode_docid([date(2023, 12, 31)])
        b = encode_docid([date(2024, 1, 1)])
        assert compare_docids(DEFAULT_ORDERING, a, b) == -1

    @given(st.integers(), st.integers())
    def test_integers_follow_numeric_order(self, a: int, b: int) -> None:
        expected = (a > b) - (a < b)
        assert compare_docids(DEFAULT_ORDERING, encode_docid([a]), encode_docid([b])) == expected

    @given(st.integers(), st.integers())
    def test_antisymmetric(self, a: int, b: int) -> None:
        x, y = encode_docid([a, "k"]), encode_docid([b, "k"])
        assert compare_docids(DEFAULT_ORDERING, x, y) == -compare_docids(DEFAULT_ORDERING, y, x)
