# tests/test_dataset.py
import pytest

from coffee_survey.config import FetchSettings
from coffee_survey.core.cache import MemoryCache, now_ms
from coffee_survey.core.dataset import (
    FeedConfig,
    SurveyDataAssembler,
    build_dataset,
    calculate_coffee_taste_stats,
    completion_rate,
    personalize,
    sample_dataset,
    user_coffee_preferences,
)
from coffee_survey.core.errors import NetworkError
from coffee_survey.core.feed_parser import (
    COFFEE_DATA_SCHEMA,
    COFFEE_QUALITY_SCHEMA,
    PREFERENCE_SCHEMA,
    TASTE_TEST_SCHEMA,
    TasteTestResponse,
)

TASTE_URL = "https://example.com/taste.csv"
PREFERENCE_URL = "https://example.com/preference.csv"
COFFEE_URL = "https://example.com/coffee.csv"
QUALITY_URL = "https://example.com/quality.csv"


class FakeFetcher:
    """Serves canned bodies by URL; exceptions in `bodies` are raised instead."""

    def __init__(self, bodies):
        self.bodies = bodies
        self.calls = []

    def fetch_text(self, url):
        self.calls.append(url)
        body = self.bodies[url]
        if isinstance(body, Exception):
            raise body
        return body


def _feeds(coffee_ttl=None):
    return (
        FeedConfig(TASTE_URL, TASTE_TEST_SCHEMA, required=True),
        FeedConfig(PREFERENCE_URL, PREFERENCE_SCHEMA, required=True),
        FeedConfig(COFFEE_URL, COFFEE_DATA_SCHEMA, cache_ttl_seconds=coffee_ttl),
        FeedConfig(QUALITY_URL, COFFEE_QUALITY_SCHEMA),
    )


def _taste(uuid, coffee, enjoyment, body="Medium", acidity="Pleasant Acidity", notes=""):
    return TasteTestResponse(
        uuid=uuid, timestamp="t", which_coffee=coffee, aroma=enjoyment, flavor=enjoyment,
        acidity=acidity, body=body, aftertaste=enjoyment, tasting_notes=notes,
        overall_enjoyment=enjoyment,
    )


@pytest.fixture
def bodies(taste_csv, preference_csv, coffee_csv):
    return {
        TASTE_URL: taste_csv,
        PREFERENCE_URL: preference_csv,
        COFFEE_URL: coffee_csv,
        QUALITY_URL: NetworkError("HTTP 404: Not Found"),
    }


# --- Assembly --- #


def test_assemble_combines_feeds_and_records_optional_failures(bodies):
    assembler = SurveyDataAssembler(FetchSettings(), _feeds(), fetcher=FakeFetcher(bodies))
    dataset = assembler.assemble()

    assert not dataset.is_sample
    assert len(dataset.taste_test_data) == 4
    assert len(dataset.preference_data) == 2
    assert [c.coffee_id for c in dataset.coffee_data] == ["A", "B", "C"]
    assert dataset.quality_data == ()
    assert dataset.errors == ("coffee_quality: HTTP 404: Not Found",)
    assert dataset.unique_coffees == ("A", "B", "C")
    assert dataset.data_quality.total_responses == 6
    assert dataset.data_quality.completion_rate == 1.0


def test_required_feed_failure_falls_back_to_sample_data(bodies):
    bodies[PREFERENCE_URL] = NetworkError("HTTP 500: Server Error")
    dataset = SurveyDataAssembler(FetchSettings(), _feeds(), fetcher=FakeFetcher(bodies)).assemble()

    assert dataset.is_sample
    assert dataset.unique_coffees == ("A", "D", "E", "F", "G", "H")
    assert dataset.data_quality.completion_rate == 0.8


def test_required_feed_failure_without_fallback_raises(bodies):
    bodies[TASTE_URL] = NetworkError("HTTP 500: Server Error")
    assembler = SurveyDataAssembler(FetchSettings(), _feeds(), fetcher=FakeFetcher(bodies))

    with pytest.raises(NetworkError):
        assembler.assemble(permit_fallback=False)


def test_header_only_required_feed_is_a_parse_failure(bodies):
    bodies[TASTE_URL] = "UUID,Which Coffee,Overall Enjoyment"
    dataset = SurveyDataAssembler(FetchSettings(), _feeds(), fetcher=FakeFetcher(bodies)).assemble()

    assert dataset.is_sample


def test_unconfigured_feed_uses_sample_without_fetching(bodies):
    fetcher = FakeFetcher(bodies)
    feeds = (FeedConfig("https://docs.google.com/YOUR_SHEET_ID_HERE/pub", TASTE_TEST_SCHEMA, required=True),)
    dataset = SurveyDataAssembler(FetchSettings(), feeds, fetcher=fetcher).assemble()

    assert dataset.is_sample
    assert fetcher.calls == []


def test_cached_feed_is_fetched_once(bodies):
    fetcher = FakeFetcher(bodies)
    assembler = SurveyDataAssembler(FetchSettings(), _feeds(coffee_ttl=3600), fetcher=fetcher, cache=MemoryCache())

    first = assembler.assemble()
    second = assembler.assemble()

    assert fetcher.calls.count(COFFEE_URL) == 1
    assert fetcher.calls.count(TASTE_URL) == 2
    assert first.coffee_data == second.coffee_data


@pytest.mark.parametrize(
    "cached",
    [b"\xff\xfe\n\xff", b"coffee_id,coffee_name,coffee_geography,process,brew_method,price"],
)
def test_unusable_cached_payload_is_refetched(bodies, cached):
    fetcher = FakeFetcher(bodies)
    cache = MemoryCache()
    cache.put(f"coffee_data:{COFFEE_URL}", cached, now_ms() + 60_000)
    assembler = SurveyDataAssembler(FetchSettings(), _feeds(coffee_ttl=3600), fetcher=fetcher, cache=cache)

    dataset = assembler.assemble(permit_fallback=True)

    assert not dataset.is_sample
    assert fetcher.calls.count(COFFEE_URL) == 1
    assert [c.coffee_id for c in dataset.coffee_data] == ["A", "B", "C"]
    assert dataset.errors == ("coffee_quality: HTTP 404: Not Found",)
    # the fresh body replaced the bad entry
    assert cache.get(f"coffee_data:{COFFEE_URL}").startswith(b"coffee_id,")


def test_feed_without_ttl_bypasses_cache(bodies):
    fetcher = FakeFetcher(bodies)
    cache = MemoryCache()
    assembler = SurveyDataAssembler(FetchSettings(), _feeds(), fetcher=fetcher, cache=cache)
    assembler.assemble()
    assembler.assemble()

    assert fetcher.calls.count(COFFEE_URL) == 2
    assert cache.get(f"coffee_data:{COFFEE_URL}") is None


@pytest.mark.parametrize(
    "preference_count,taste_count,expected",
    [(2, 3, 1.0), (2, 0, 0.5), (0, 3, 0.5), (0, 0, 0.0)],
)
def test_completion_rate(preference_count, taste_count, expected):
    assert completion_rate(preference_count, taste_count) == expected


def test_unique_coffees_keep_encounter_order():
    dataset = build_dataset(
        preference_data=[],
        taste_test_data=[_taste("u1", "B", 3), _taste("u2", "A", 3), _taste("u3", "B", 4)],
    )
    assert dataset.unique_coffees == ("B", "A")
    assert dataset.data_quality.completion_rate == 0.5


def test_to_frame_has_record_columns(survey_dataset):
    df = survey_dataset.to_frame("taste_test_data")

    assert len(df) == 4
    assert "overall_enjoyment" in df.columns
    assert df["which_coffee"].tolist() == ["A", "B", "A", "B"]

    with pytest.raises(KeyError):
        survey_dataset.to_frame("nope")


def test_sample_dataset_is_usable():
    dataset = sample_dataset()

    assert dataset.is_sample
    assert dataset.data_quality.total_responses == 5
    assert {r.uuid for r in dataset.taste_test_data} <= {r.uuid for r in dataset.preference_data}


# --- Personalization --- #


def test_personalize_without_id():
    view = personalize(sample_dataset(), None)

    assert not view.has_user_id
    assert not view.can_view_personalized_results
    assert view.taste_test_responses == ()


def test_personalize_participant_in_both_feeds(survey_dataset):
    view = personalize(survey_dataset, "u1")

    assert view.has_user_id
    assert view.has_preference_response
    assert view.has_taste_test_response
    assert view.can_view_personalized_results
    assert view.preference_response.preference == "Coffee"
    assert [r.which_coffee for r in view.taste_test_responses] == ["A", "B"]
    assert view.harshness is None


def test_personalize_needs_every_feed():
    dataset = build_dataset(preference_data=[], taste_test_data=[_taste("u9", "A", 3)])
    view = personalize(dataset, "u9")

    assert view.has_taste_test_response
    assert not view.has_preference_response
    assert not view.can_view_personalized_results


def test_user_coffee_preferences_keep_ties():
    rows = [_taste("u1", "A", 4.5), _taste("u1", "B", 4.5), _taste("u1", "C", 2), _taste("u2", "A", 1)]
    prefs = user_coffee_preferences(rows, "u1")

    assert prefs.favorite_coffees == ("A", "B")
    assert prefs.least_favorite_coffees == ("C",)
    assert prefs.user_ratings == {"A": 4.5, "B": 4.5, "C": 2}


@pytest.mark.parametrize(
    "rows",
    [
        [_taste("u1", "A", 4)],
        [_taste("u1", "A", 3), _taste("u1", "B", 3)],
        [],
    ],
)
def test_user_coffee_preferences_without_clear_favorite(rows):
    prefs = user_coffee_preferences(rows, "u1")

    assert prefs.favorite_coffees == ()
    assert prefs.least_favorite_coffees == ()


# --- Taste statistics --- #


def test_calculate_coffee_taste_stats():
    rows = [
        _taste("u1", "B", 4, body="Light", acidity="No acidity"),
        _taste("u2", "A", 3, body="Heavy"),
        _taste("u3", "A", 4, body="Heavy"),
        _taste("u4", "A", 5, body="Light", acidity="Too Acidic"),
    ]
    stats = calculate_coffee_taste_stats(rows)

    assert [s.coffee_id for s in stats] == ["A", "B"]
    a = stats[0]
    assert a.total_ratings == 3
    assert a.average_overall_enjoyment == pytest.approx(4.0)
    assert a.most_common_body.option == "Heavy"
    assert a.most_common_body.count == 2
    assert a.most_common_body.percentage == pytest.approx(200 / 3)
    assert a.most_common_acidity.option == "Pleasant Acidity"


def test_calculate_coffee_taste_stats_empty():
    assert calculate_coffee_taste_stats([]) == []
