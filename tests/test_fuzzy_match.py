"""
Unit tests for fuzzy drug-name matching.
"""
import pytest

from pharmacy_inventory.fuzzy_match import (
    find_best_matches,
    levenshtein_distance,
    matches,
    normalize_drug_name,
    similarity,
    suggest,
)


class TestNormalization:
    """Test name normalisation."""

    def test_strips_case_punctuation_and_units(self):
        assert normalize_drug_name("  Morphine   10 MG ") == "morphine 10"
        assert normalize_drug_name("Propofol 10mg/ml") == "propofol 10mgml"
        assert normalize_drug_name("Insulin (100 units)") == "insulin 100"

    def test_empty_name(self):
        assert normalize_drug_name("   ") == ""


class TestSimilarity:
    """Test similarity scoring."""

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    @pytest.mark.parametrize("name", ["Propofol", "Morphine 10mg", "x"])
    def test_identity(self, name):
        assert similarity(name, name) == 1.0

    def test_symmetric(self):
        assert similarity("Propofol", "Propfol") == similarity("Propfol", "Propofol")
        assert similarity("Fentanyl", "Fentanil citrate") == similarity("Fentanil citrate", "Fentanyl")

    def test_typo_matches(self):
        assert matches("Propofol", "Propfol", 0.6)
        assert not matches("Propofol", "Paracetamol", 0.6)

    def test_containment_uses_length_ratio(self):
        assert similarity("Insulin", "Insulin Glargine") == pytest.approx(7 / 16)

    def test_short_containment_falls_back_to_edit_distance(self):
        # "ab" is too short to count as a contained name
        assert similarity("ab", "abcd") == pytest.approx(0.5)

    def test_empty_against_name(self):
        assert similarity("", "Propofol") == 0.0

    def test_unit_difference_ignored(self):
        assert similarity("Morphine 10 mg", "morphine 10") == 1.0


class TestRanking:
    """Test candidate ranking and suggestions."""

    CATALOG = ["Propofol", "Paracetamol", "Morphine", "Propranolol", "Propofol"]

    def test_best_matches_sorted_and_unique(self):
        result = find_best_matches("propofl", self.CATALOG, threshold=0.6)
        names = [name for name, _ in result]
        assert names[0] == "Propofol"
        assert names.count("Propofol") == 1
        scores = [score for _, score in result]
        assert scores == sorted(scores, reverse=True)

    def test_threshold_filters(self):
        assert find_best_matches("Ketamine", self.CATALOG, threshold=0.9) == []

    def test_limit(self):
        assert len(find_best_matches("pro", self.CATALOG, threshold=0.0, limit=2)) == 2

    def test_suggest_returns_nearest_names(self):
        suggestions = suggest("Propfool", self.CATALOG)
        assert suggestions[0] == "Propofol"
        assert len(suggestions) <= 5
        assert len(set(suggestions)) == len(suggestions)
