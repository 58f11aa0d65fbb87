"""Tests for rule-based intent classification and filter extraction."""

import pytest

from rental_assistant.agents.query_analyzer import QueryAnalyzer
from rental_assistant.models.state import ActionType, QueryIntent


@pytest.fixture
def analyzer():
    return QueryAnalyzer(["Portland", "Gresham", "Fairview", "Lake Oswego", "Beaverton"])


class TestClassify:
    @pytest.mark.parametrize("text", [
        "What properties do you have?",
        "show me properties",
        "list properties please",
        "available properties?",
    ])
    def test_generic_listing_requests_are_exact(self, analyzer, text):
        assert analyzer.classify(text) == QueryIntent.EXACT

    def test_filters_with_descriptive_noun_are_hybrid(self, analyzer):
        assert analyzer.classify("2 bedroom apartments under $2000 with pets") == QueryIntent.HYBRID

    def test_filters_alone_are_exact(self, analyzer):
        assert analyzer.classify("pet friendly") == QueryIntent.EXACT
        assert analyzer.classify("3 bed 2 bath") == QueryIntent.EXACT

    def test_descriptive_text_is_semantic(self, analyzer):
        assert analyzer.classify("cozy place near a park") == QueryIntent.SEMANTIC

    def test_empty_text_defaults_to_semantic(self, analyzer):
        assert analyzer.classify("") == QueryIntent.SEMANTIC

    @pytest.mark.parametrize("text,action", [
        ("schedule a tour", ActionType.TOUR),
        ("Can I visit this weekend?", ActionType.TOUR),
        ("how do I apply", ActionType.APPLY),
        ("send me the application", ActionType.APPLY),
        ("more info on that one", ActionType.DETAILS),
    ])
    def test_actions(self, analyzer, text, action):
        assert analyzer.classify(text) == QueryIntent.ACTION
        assert analyzer.detect_action(text) == action

    def test_action_wins_over_choice(self, analyzer):
        assert analyzer.classify("tour the second one") == QueryIntent.ACTION

    @pytest.mark.parametrize("text,index", [
        ("2", 1),
        ("option 3", 2),
        ("I'll take the second one", 1),
        ("the 1st", 0),
        ("#4 looks good", 3),
    ])
    def test_choices(self, analyzer, text, index):
        assert analyzer.classify(text) == QueryIntent.CHOICE
        assert analyzer.choice_index(text) == index

    def test_quantities_are_not_choices(self, analyzer):
        assert analyzer.choice_index("2 bedroom") is None
        assert analyzer.choice_index("1.5 bath") is None
        assert analyzer.choice_index("under $2000") is None

    def test_generic_show_me_is_not_a_details_action(self, analyzer):
        query = analyzer.analyze("show me all properties")
        assert query.intent == QueryIntent.EXACT
        assert query.action is None

    def test_classification_is_case_insensitive(self, analyzer):
        assert analyzer.classify("SCHEDULE A TOUR") == analyzer.classify("schedule a tour")


class TestExtractFilters:
    def test_beds_rent_and_pets(self, analyzer):
        filters = analyzer.extract_filters("2 bedroom apartments under $2000 with pets")
        assert filters.to_dict() == {"beds": 2, "rent": {"max": 2000}, "pets_allowed": True}

    def test_studio_means_zero_beds(self, analyzer):
        filters = analyzer.extract_filters("studio in portland")
        assert filters.beds == 0
        assert filters.city == "Portland"

    def test_fractional_baths(self, analyzer):
        assert analyzer.extract_filters("2br 1.5 bath").baths == 1.5

    @pytest.mark.parametrize("text,low,high", [
        ("$1500-$2000", 1500, 2000),
        ("between $1,500 to $2,000", 1500, 2000),
        ("$2k - $1.5k", 1500, 2000),
    ])
    def test_rent_ranges(self, analyzer, text, low, high):
        rent = analyzer.extract_filters(text).rent
        assert (rent.min, rent.max) == (low, high)

    def test_rent_minimum(self, analyzer):
        rent = analyzer.extract_filters("something over $1500").rent
        assert rent.min == 1500
        assert rent.max is None

    def test_square_feet(self, analyzer):
        assert analyzer.extract_filters("under 900 sq ft").square_feet.max == 900
        assert analyzer.extract_filters("at least 1,000 sqft").square_feet.min == 1000
        assert analyzer.extract_filters("800 square feet").square_feet.min == 800

    def test_multi_word_city(self, analyzer):
        assert analyzer.extract_filters("anything in lake oswego?").city == "Lake Oswego"

    def test_unknown_city_is_ignored(self, analyzer):
        assert analyzer.extract_filters("anything in seattle").city is None

    def test_pet_words(self, analyzer):
        assert analyzer.extract_filters("I have a dog").pets_allowed is True
        assert analyzer.extract_filters("quiet place").pets_allowed is None

    def test_nothing_detected(self, analyzer):
        assert analyzer.extract_filters("cozy place near a park").is_empty()


class TestCatchAll:
    @pytest.mark.parametrize("text", ["*", " * ", "show me all listings", "List everything"])
    def test_catch_all(self, analyzer, text):
        assert analyzer.is_catch_all(text)

    def test_specific_query_is_not_catch_all(self, analyzer):
        assert not analyzer.is_catch_all("2 bedroom in gresham")


def test_analyze_builds_full_query(analyzer):
    query = analyzer.analyze("schedule a tour")
    assert query.intent == QueryIntent.ACTION
    assert query.action == ActionType.TOUR
    assert query.text == "schedule a tour"
    assert query.filters.is_empty()
