"""
Tests for scan boundary resolution and scan plans.
"""

import datetime
import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from widekey import KeyType, Mapping, key_encode, substitute_new
from widetable import (
    BOUND_LOWER,
    BOUND_UPPER,
    CacheSizeError,
    KeyBoundaryError,
    ScanBoundary,
    TableConfigError,
    boundaries_resolve,
    boundary_resolve,
    cache_size_resolve,
    scan_plan,
    table_new,
    table_scanner_builder,
    table_scanner_builder_mapping,
)


def _date(text):
    return key_encode(datetime.datetime.strptime(text, "%Y-%m-%d"), KeyType.DATE)


# ============================================================================
# Tests for boundary_resolve
# ============================================================================


def test_empty_literal_is_unbounded():
    """Test that empty or missing literals leave the bound open"""
    assert boundary_resolve(None, KeyType.STRING) is None
    assert boundary_resolve("", KeyType.DATE, "yyyy-MM-dd") is None


@pytest.mark.parametrize("literal", ["abc", "a@b", "2020-01-01@yyyy-MM-dd", "x@y@z"])
@pytest.mark.parametrize("mask", [None, "", "yyyy-MM-dd", "#,##0"])
def test_string_keys_ignore_masks(literal, mask):
    """Test that string keys are taken verbatim, @ included"""
    assert boundary_resolve(literal, KeyType.STRING, mask) == literal.encode("utf-8")


def test_binary_keys_are_hex():
    """Test that binary key literals are hex"""
    assert boundary_resolve("0aff", KeyType.BINARY, "yyyy") == b"\x0a\xff"


def test_binary_keys_never_split_on_at():
    """Test that binary keys are not split on @"""
    with pytest.raises(KeyBoundaryError) as info:
        boundary_resolve("0a@ff", KeyType.BINARY)
    assert info.value.literal == "0a@ff"


def test_date_with_declared_mask():
    """Test that a date literal parses with the declared mask"""
    assert boundary_resolve("2020-01-01", KeyType.DATE, "yyyy-MM-dd") == _date("2020-01-01")


def test_unsigned_date_with_declared_mask():
    """Test that unsigned dates parse with the declared mask"""
    assert boundary_resolve("01/02/2020", KeyType.UNSIGNED_DATE, "dd/MM/yyyy") == key_encode(
        datetime.datetime(2020, 2, 1), KeyType.UNSIGNED_DATE
    )


def test_embedded_mask_overrides_declared_mask():
    """Test that a mask after @ wins over the declared one"""
    literal = "01/02/2020@dd/MM/yyyy"
    assert boundary_resolve(literal, KeyType.DATE, "yyyy-MM-dd") == _date("2020-02-01")


def test_embedded_mask_without_declared_mask():
    """Test that an embedded mask works without a declared one"""
    assert boundary_resolve("1,000@#,##0", KeyType.LONG) == key_encode(1000, KeyType.LONG)


def test_two_at_signs_do_not_split():
    """Test that a literal with two @ is not split"""
    with pytest.raises(KeyBoundaryError) as info:
        boundary_resolve("2020-01-01@yyyy@MM", KeyType.DATE, "yyyy-MM-dd")
    assert info.value.literal == "2020-01-01@yyyy@MM"


def test_trailing_at_does_not_split():
    """A trailing empty mask is not a mask, the declared one still applies"""
    with pytest.raises(KeyBoundaryError) as info:
        boundary_resolve("2020-01-01@", KeyType.DATE, "yyyy-MM-dd")
    assert info.value.literal == "2020-01-01@"


def test_numeric_mask_parses_number():
    """Test that numeric keys parse with a decimal mask"""
    assert boundary_resolve("1,234.5", KeyType.DOUBLE, "#,##0.0") == key_encode(
        1234.5, KeyType.DOUBLE
    )
    assert boundary_resolve("1,234", KeyType.INTEGER, "#,##0") == key_encode(
        1234, KeyType.INTEGER
    )


def test_no_mask_falls_back_to_string():
    """Test that mask-less numeric literals convert directly"""
    assert boundary_resolve("42", KeyType.LONG) == key_encode(42, KeyType.LONG)
    assert boundary_resolve("42", KeyType.LONG, "") == key_encode(42, KeyType.LONG)


def test_substitution_happens_before_split(monkeypatch):
    """Test that variables are substituted before the @ split"""
    monkeypatch.setenv("WIDETABLE_TEST_DAY", "03/04/2021")
    literal = "${WIDETABLE_TEST_DAY}@dd/MM/yyyy"
    assert boundary_resolve(literal, KeyType.DATE) == _date("2021-04-03")


def test_injected_substitute():
    """Test that a given substitute replaces the environment lookup"""
    substitute = substitute_new({"ROW": "user-7"})
    assert boundary_resolve("${ROW}", KeyType.STRING, substitute=substitute) == b"user-7"


def test_malformed_literal_reports_bound():
    """Test that parse failures name the literal and the bound"""
    with pytest.raises(KeyBoundaryError) as info:
        boundary_resolve("not-a-date", KeyType.DATE, "yyyy-MM-dd", bound=BOUND_UPPER)
    assert info.value.bound == "upper"
    assert info.value.literal == "not-a-date"
    assert "upper" in str(info.value) and "not-a-date" in str(info.value)
    assert isinstance(info.value.__cause__, ValueError)
    assert isinstance(info.value, TableConfigError)


# ============================================================================
# Tests for boundaries_resolve
# ============================================================================


def test_date_range_end_to_end():
    """Test resolving both bounds of a date range"""
    boundary = boundaries_resolve("2020-01-01", "2020-12-31", KeyType.DATE, "yyyy-MM-dd")
    assert boundary == ScanBoundary(_date("2020-01-01"), _date("2020-12-31"))
    assert boundary.lower < boundary.upper


def test_missing_start_ignores_stop():
    """Test that a stop key without a start key is ignored"""
    assert boundaries_resolve(None, "zzz", KeyType.STRING) == ScanBoundary(None, None)
    assert boundaries_resolve("", "garbage", KeyType.DATE, "yyyy-MM-dd") == ScanBoundary(
        None, None
    )


def test_missing_stop_is_open_ended():
    """Test that a start key alone leaves the range open ended"""
    boundary = boundaries_resolve("a", None, KeyType.STRING)
    assert boundary == ScanBoundary(b"a", None)


def test_failing_lower_bound():
    """Test that a bad start key fails as the lower bound"""
    with pytest.raises(KeyBoundaryError) as info:
        boundaries_resolve("2020-99-01", "2020-12-31", KeyType.DATE, "yyyy-MM-dd")
    assert info.value.bound == BOUND_LOWER


def test_failing_upper_bound():
    """Test that a bad stop key fails as the upper bound"""
    with pytest.raises(KeyBoundaryError) as info:
        boundaries_resolve("2020-01-01", "2020-13-45", KeyType.DATE, "yyyy-MM-dd")
    assert info.value.bound == BOUND_UPPER
    assert info.value.literal == "2020-13-45"


def test_each_literal_overrides_its_own_mask():
    """Test that embedded masks apply to their own literal only"""
    boundary = boundaries_resolve(
        "2020-01-01", "31/12/2020@dd/MM/yyyy", KeyType.DATE, "yyyy-MM-dd"
    )
    assert boundary == ScanBoundary(_date("2020-01-01"), _date("2020-12-31"))


# ============================================================================
# Tests for cache sizes and scan plans
# ============================================================================


def test_cache_size_empty_is_zero():
    """Test that a missing cache size is zero"""
    assert cache_size_resolve(None) == 0
    assert cache_size_resolve("") == 0


def test_cache_size_substituted_and_logged(caplog):
    """Test that the cache size is substituted and logged"""
    log = logging.getLogger("widetable.test")
    with caplog.at_level(logging.INFO, logger="widetable.test"):
        size = cache_size_resolve("${CACHE}", substitute_new({"CACHE": "50"}), log)
    assert size == 50
    assert "Setting scanner caching to 50 rows" in caplog.text


@pytest.mark.parametrize("literal", ["abc", "1.5", "-3"])
def test_cache_size_malformed(literal):
    """Test that bad cache sizes raise CacheSizeError"""
    with pytest.raises(CacheSizeError) as info:
        cache_size_resolve(literal)
    assert info.value.literal == literal


def test_scan_plan_keeps_zero_cache_size():
    """Test that a zero cache size stays zero in the plan"""
    plan = scan_plan("users", 0, b"a", None)
    assert plan.table_name == "users"
    assert plan.cache_size == 0
    assert plan.boundary == ScanBoundary(b"a", None)


def test_scan_plan_rejects_negative_cache_size():
    """Test that a negative cache size is refused"""
    with pytest.raises(TableConfigError):
        scan_plan("users", -1, None, None)


def test_scanner_builder_raw_bounds():
    """Test a scanner builder over encoded bounds"""
    table = table_new(object(), "users")
    builder = table_scanner_builder(table, b"\x01", b"\x02")
    assert builder.plan == scan_plan("users", 0, b"\x01", b"\x02")


def test_scanner_builder_mapping():
    """Test a scanner builder over typed key literals"""
    table = table_new(object(), "events")
    mapping = Mapping("events", "by-day", "day", KeyType.DATE)
    builder = table_scanner_builder_mapping(
        table, mapping, "yyyy-MM-dd", "2020-01-01", "2020-12-31", None
    )
    assert builder.plan.cache_size == 0
    assert builder.plan.boundary == ScanBoundary(_date("2020-01-01"), _date("2020-12-31"))


def test_scanner_builder_mapping_cache_size():
    """Test that the mapping builder carries the cache size"""
    table = table_new(object(), "events")
    mapping = Mapping("events", "by-key", "key", KeyType.STRING)
    builder = table_scanner_builder_mapping(table, mapping, None, "a", "b", "25")
    assert builder.plan.cache_size == 25
    builder.caching_set(0)
    assert builder.plan.cache_size == 0
    assert builder.plan.boundary == ScanBoundary(b"a", b"b")
