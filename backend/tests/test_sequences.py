"""Tests for sequence labels and gap analysis."""

from services.sequences import find_missing_sequences, format_sequence, group_ranges


def test_format_sequence_pads():
    assert format_sequence("TEST", 1) == "TEST01"
    assert format_sequence("TEST", 123) == "TEST123"
    assert format_sequence("ORD-", 7, padding=4) == "ORD-0007"


def test_group_ranges():
    assert group_ranges([]) == []
    assert group_ranges([3]) == ["3"]
    assert group_ranges([3, 6, 7, 8]) == ["3", "6-8"]
    assert group_ranges([1, 2, 4, 5, 9]) == ["1-2", "4-5", "9"]


class TestFindMissingSequences:
    def test_gaps_within_explicit_bounds(self):
        result = find_missing_sequences({1, 2, 4, 5, 9, 10}, start=1, end=10)
        assert result["missing"] == [3, 6, 7, 8]
        assert result["ranges"] == ["3", "6-8"]
        assert result["totalMissing"] == 4
        assert result["totalExpected"] == 10
        assert result["totalReceived"] == 6

    def test_bounds_default_to_observed(self):
        result = find_missing_sequences([5, 7, 8])
        assert result["missing"] == [6]
        assert result["totalExpected"] == 4

    def test_bounds_can_extend_past_observed(self):
        result = find_missing_sequences([2, 3], start=1, end=5)
        assert result["ranges"] == ["1", "4-5"]

    def test_nothing_observed(self):
        result = find_missing_sequences([])
        assert result["missing"] == []
        assert result["ranges"] == []
        assert result["totalMissing"] == 0
        assert result["totalExpected"] == 0
        assert result["totalReceived"] == 0

    def test_nothing_observed_with_bounds(self):
        result = find_missing_sequences([], start=1, end=3)
        assert result["ranges"] == ["1-3"]
        assert result["totalMissing"] == 3
