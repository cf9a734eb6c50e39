"""
Tests for query dedup, result merging, contact filtering and relevance ranking.
"""

from leadscout.harvester.aggregation import (
    aggregate_batches,
    dedupe_queries,
    merge_organizations,
    normalize_query_text,
)
from leadscout.harvester.contact_filter import (
    filter_with_contacts,
    has_usable_contact,
    is_blocked_email,
    pick_primary_email,
)
from leadscout.harvester.contracts import QueryVariant, SearchBatch
from leadscout.harvester.relevance import extract_keywords, rank_by_relevance, score_organization
from tests.helpers import make_org


class TestQueryDedup:

    def test_six_variants_capped_to_three(self):
        variants = [QueryVariant(f"query {i}") for i in range(6)]

        result = dedupe_queries(variants, 3)

        assert [v.text for v in result] == ["query 0", "query 1", "query 2"]

    def test_repeated_locale_variant_collapses(self):
        variants = [
            QueryVariant("gymnastics clubs UAE", language="en"),
            QueryVariant("gymnastics clubs UAE (ru)", language="ru"),
            QueryVariant("gymnastics clubs UAE (ru)", language="ru"),
        ]

        result = dedupe_queries(variants, 3)

        assert [v.text for v in result] == ["gymnastics clubs UAE", "gymnastics clubs UAE (ru)"]
        assert [v.language for v in result] == ["en", "ru"]

    def test_normalization_ignores_case_and_spacing(self):
        assert normalize_query_text("  Dance   Schools ") == normalize_query_text("dance schools")

        result = dedupe_queries([QueryVariant("Dance Schools"), QueryVariant("dance  schools")], 5)

        assert len(result) == 1
        assert result[0].text == "Dance Schools"

    def test_blank_variants_dropped(self):
        result = dedupe_queries([QueryVariant("  "), QueryVariant("yoga")], 3)
        assert [v.text for v in result] == ["yoga"]


class TestMerge:

    def test_union_of_fields(self):
        first = make_org("p1", "Star Gym", phone="+971 4 123")
        second = make_org("p1", "Star Gym", email="info@stargym.ae", website="https://stargym.ae")

        merged = merge_organizations(first, second)

        assert merged.phone == "+971 4 123"
        assert merged.email == "info@stargym.ae"
        assert merged.website == "https://stargym.ae"

    def test_richer_occurrence_is_base(self):
        sparse = make_org("p1", "Star")
        rich = make_org("p1", "Star Gymnastics Club", address="Al Quoz", city="Dubai")

        merged = merge_organizations(sparse, rich)

        assert merged.name == "Star Gymnastics Club"

    def test_tie_keeps_first(self):
        first = make_org("p1", "First Name", city="Dubai")
        second = make_org("p1", "Second Name", city="Sharjah")

        merged = merge_organizations(first, second)

        assert merged.name == "First Name"
        assert merged.city == "Dubai"


class TestAggregateBatches:

    def test_merges_by_external_id_in_first_appearance_order(self):
        batches = [
            SearchBatch(QueryVariant("a"), items=[make_org("p1", "One"), make_org("p2", "Two")]),
            SearchBatch(QueryVariant("b"), items=[make_org("p2", "Two", phone="123"), make_org("p3", "Three")]),
        ]

        result = aggregate_batches(batches)

        assert [o.external_id for o in result] == ["p1", "p2", "p3"]
        assert result[1].phone == "123"

    def test_same_name_different_ids_not_merged(self):
        batches = [
            SearchBatch(QueryVariant("a"), items=[make_org("p1", "Star Gym")]),
            SearchBatch(QueryVariant("b"), items=[make_org("p2", "Star Gym")]),
        ]

        assert len(aggregate_batches(batches)) == 2

    def test_items_without_id_are_kept(self):
        batches = [
            SearchBatch(QueryVariant("a"), items=[make_org(None, "No Id"), make_org("", "Blank Id")]),
            SearchBatch(QueryVariant("b"), items=[make_org(None, "No Id")]),
        ]

        assert len(aggregate_batches(batches)) == 3

    def test_failed_batches_contribute_nothing(self):
        batches = [
            SearchBatch(QueryVariant("a"), error="timeout"),
            SearchBatch(QueryVariant("b"), items=[make_org("p1", "One")]),
        ]

        assert [o.external_id for o in aggregate_batches(batches)] == ["p1"]


class TestContactFilter:

    def test_blocked_local_parts_at_any_domain(self):
        assert is_blocked_email("noreply@gym.ae")
        assert is_blocked_email("Admin@anything.com")
        assert is_blocked_email("test@example.org")
        assert not is_blocked_email("info@gym.ae")

    def test_non_email_is_blocked(self):
        assert is_blocked_email("not-an-email")
        assert is_blocked_email(None)

    def test_pick_primary_skips_blocked(self):
        assert pick_primary_email(["noreply@gym.ae", "coach@gym.ae"]) == "coach@gym.ae"
        assert pick_primary_email(["admin@gym.ae"]) is None

    def test_phone_only_is_kept(self):
        assert has_usable_contact(make_org("p1", phone="+971 50 000"))

    def test_no_contacts_dropped(self):
        assert not has_usable_contact(make_org("p1", "Silent Club"))

    def test_blocked_email_drops_item_even_with_phone(self):
        assert not has_usable_contact(make_org("p1", email="noreply@gym.ae", phone="+971 50 000"))

    def test_filter_keeps_order(self):
        items = [
            make_org("p1", email="info@a.ae"),
            make_org("p2"),
            make_org("p3", phone="123"),
        ]

        assert [o.external_id for o in filter_with_contacts(items)] == ["p1", "p3"]


class TestRelevance:

    def test_extract_keywords_skips_short_words(self):
        assert extract_keywords("gym in Dubai, UAE") == ["gym", "dubai", "uae"]

    def test_score_components(self):
        org = make_org(
            "p1",
            "Dubai Gymnastics Club",
            address="Al Quoz, Dubai",
            rating=4.5,
            reviews_count=120,
        )

        score = score_organization(org, ["gymnastics", "club", "uae"], ["dubai"])

        # two keywords + location boost + rating + reviews bonus
        assert score == 20 + 15 + 9 + 3

    def test_reviews_bonus_needs_rating(self):
        org = make_org("p1", "Club", reviews_count=500)
        assert score_organization(org, [], []) == 0

    def test_rank_sorts_descending_and_truncates(self):
        items = [
            make_org("p1", "Bakery"),
            make_org("p2", "Gymnastics Academy", rating=4.0),
            make_org("p3", "Gymnastics Club"),
        ]

        ranked = rank_by_relevance(items, "gymnastics clubs", result_limit=2)

        assert [o.external_id for o in ranked] == ["p2", "p3"]
        assert ranked[0].relevance_score == 18

    def test_ties_keep_input_order(self):
        items = [make_org("p1", "Alpha"), make_org("p2", "Beta"), make_org("p3", "Gamma")]

        ranked = rank_by_relevance(items, "zumba")

        assert [o.external_id for o in ranked] == ["p1", "p2", "p3"]
