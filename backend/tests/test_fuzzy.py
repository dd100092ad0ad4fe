"""Edit-distance similarity tests."""

import pytest

from spend_classifier.services.fuzzy import is_match, levenshtein_distance, similarity


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ("", "", 0),
        ("abc", "", 3),
        ("kitten", "sitting", 3),
        ("flaw", "lawn", 2),
        ("same", "same", 0),
    ],
)
def test_levenshtein_distance(a, b, expected):
    assert levenshtein_distance(a, b) == expected


def test_similarity_is_case_insensitive():
    assert similarity("STARBUCKS", "starbucks") == 1.0


def test_similarity_normalizes_by_longer_string():
    # 3 edits over 7 characters
    assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


def test_empty_strings():
    assert similarity("", "") == 1.0
    assert similarity("walmart", "") == 0.0
    assert similarity(None, "walmart") == 0.0


def test_store_numbers_are_close_enough():
    score = similarity("STARBUCKS STORE #5521", "Starbucks Store #5500")
    assert score >= 0.8
    assert is_match("STARBUCKS STORE #5521", "Starbucks Store #5500")


def test_threshold_is_inclusive_and_configurable():
    # distance 1 over 5 characters -> exactly 0.8
    assert similarity("abcde", "abcdx") == pytest.approx(0.8)
    assert is_match("abcde", "abcdx")
    assert not is_match("abcde", "abcdx", threshold=0.9)
    assert not is_match("starbucks", "dunkin donuts")
