from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import logging
import pandas as pd

from coffee_survey import config
from coffee_survey.config import FetchSettings
from coffee_survey.core.cache import FeedCache, now_ms
from coffee_survey.core.data_loader import FeedFetcher
from coffee_survey.core.errors import DataServiceError, ParseError
from coffee_survey.core.feed_parser import (
    COFFEE_DATA_SCHEMA,
    COFFEE_QUALITY_SCHEMA,
    HARSHNESS_SCHEMA,
    PREFERENCE_SCHEMA,
    TASTE_TEST_SCHEMA,
    CoffeeMetadata,
    CoffeeQualityEstimate,
    FeedSchema,
    ParticipantHarshnessEstimate,
    PreferenceResponse,
    TasteTestResponse,
    parse_feed,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Feed configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedConfig:
    """
    One published CSV feed.

    required feeds must load for the dataset to be real data; optional feeds
    degrade to empty on failure. cache_ttl_seconds enables the opportunistic
    cache for that feed.
    """
    url: str
    schema: FeedSchema
    required: bool = False
    cache_ttl_seconds: Optional[int] = None

    @property
    def name(self) -> str:
        return self.schema.name


def default_feeds() -> Tuple[FeedConfig, ...]:
    return (
        FeedConfig(config.TASTE_TEST_URL, TASTE_TEST_SCHEMA, required=True),
        FeedConfig(config.PREFERENCE_URL, PREFERENCE_SCHEMA, required=True),
        FeedConfig(
            config.COFFEE_DATA_URL,
            COFFEE_DATA_SCHEMA,
            cache_ttl_seconds=config.COFFEE_DATA_CACHE_TTL_SECONDS,
        ),
        FeedConfig(config.COFFEE_QUALITY_URL, COFFEE_QUALITY_SCHEMA),
        FeedConfig(config.PARTICIPANT_HARSHNESS_URL, HARSHNESS_SCHEMA),
    )


# ---------------------------------------------------------------------------
# Dataset
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DataQuality:
    total_responses: int
    completion_rate: float


@dataclass(frozen=True)
class SurveyDataset:
    """
    Snapshot of every feed after one assembly.

    Treat as immutable: downstream code derives from it and never edits it.
    """
    preference_data: Tuple[PreferenceResponse, ...]
    taste_test_data: Tuple[TasteTestResponse, ...]
    coffee_data: Tuple[CoffeeMetadata, ...] = ()
    quality_data: Tuple[CoffeeQualityEstimate, ...] = ()
    harshness_data: Tuple[ParticipantHarshnessEstimate, ...] = ()
    unique_coffees: Tuple[str, ...] = ()
    data_quality: DataQuality = DataQuality(total_responses=0, completion_rate=0.0)
    is_sample: bool = False
    errors: Tuple[str, ...] = ()

    _FEED_TYPES = {
        "preference_data": PREFERENCE_SCHEMA.record_type,
        "taste_test_data": TASTE_TEST_SCHEMA.record_type,
        "coffee_data": COFFEE_DATA_SCHEMA.record_type,
        "quality_data": COFFEE_QUALITY_SCHEMA.record_type,
        "harshness_data": HARSHNESS_SCHEMA.record_type,
    }

    def to_frame(self, feed: str) -> pd.DataFrame:
        """Tabular copy of one feed (e.g. 'taste_test_data') for display."""
        if feed not in self._FEED_TYPES:
            raise KeyError(f"Unknown feed {feed!r}. Expected one of {sorted(self._FEED_TYPES)}")
        records = getattr(self, feed)
        columns = [f.name for f in fields(self._FEED_TYPES[feed])]
        return pd.DataFrame.from_records([asdict(r) for r in records], columns=columns)

    def coffee_info(self, coffee_id: str) -> Optional[CoffeeMetadata]:
        for coffee in self.coffee_data:
            if coffee.coffee_id == coffee_id:
                return coffee
        return None


def _distinct(values: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for v in values:
        if v:
            seen.setdefault(v, None)
    return tuple(seen)


def completion_rate(preference_count: int, taste_test_count: int) -> float:
    if preference_count > 0 and taste_test_count > 0:
        return 1.0
    if preference_count > 0 or taste_test_count > 0:
        return 0.5
    return 0.0


def build_dataset(
    *,
    preference_data: Sequence[PreferenceResponse],
    taste_test_data: Sequence[TasteTestResponse],
    coffee_data: Sequence[CoffeeMetadata] = (),
    quality_data: Sequence[CoffeeQualityEstimate] = (),
    harshness_data: Sequence[ParticipantHarshnessEstimate] = (),
    errors: Sequence[str] = (),
) -> SurveyDataset:
    unique_coffees = _distinct(
        [r.which_coffee for r in taste_test_data]
        + [c.coffee_id for c in coffee_data]
        + [q.coffee_id for q in quality_data]
    )
    quality = DataQuality(
        total_responses=len(preference_data) + len(taste_test_data),
        completion_rate=completion_rate(len(preference_data), len(taste_test_data)),
    )
    return SurveyDataset(
        preference_data=tuple(preference_data),
        taste_test_data=tuple(taste_test_data),
        coffee_data=tuple(coffee_data),
        quality_data=tuple(quality_data),
        harshness_data=tuple(harshness_data),
        unique_coffees=unique_coffees,
        data_quality=quality,
        errors=tuple(errors),
    )


def sample_dataset() -> SurveyDataset:
    """
    Small fixed demo dataset used when live feeds cannot be loaded.

    Not representative of real responses; it exists so the UI has something
    to render offline and so tests have a known shape.
    """
    preference = (
        PreferenceResponse(uuid="jq9hqap3f7g", timestamp="6/2/2025 12:43:15", preference="Coffee"),
        PreferenceResponse(uuid="q7oa8cg3vws", timestamp="6/2/2025 12:43:16", preference="Tea"),
    )
    taste = (
        TasteTestResponse(
            uuid="jq9hqap3f7g", timestamp="6/2/2025 12:43:15", which_coffee="D",
            aroma=2.5, flavor=2.0, acidity="Pleasant Acidity", body="Heavy",
            aftertaste=2.0, tasting_notes="Woody", overall_enjoyment=2.0,
        ),
        TasteTestResponse(
            uuid="q7oa8cg3vws", timestamp="6/2/2025 12:43:16", which_coffee="E",
            aroma=4.0, flavor=4.5, acidity="No acidity", body="Light",
            aftertaste=4.5, tasting_notes="Floral", overall_enjoyment=4.5,
        ),
        TasteTestResponse(
            uuid="q7oa8cg3vws", timestamp="6/2/2025 12:43:16", which_coffee="F",
            aroma=4.5, flavor=4.5, acidity="Pleasant Acidity", body="Medium",
            aftertaste=5.0, tasting_notes="Earthy,Berry,Floral", overall_enjoyment=4.5,
        ),
    )
    return SurveyDataset(
        preference_data=preference,
        taste_test_data=taste,
        unique_coffees=("A", "D", "E", "F", "G", "H"),
        data_quality=DataQuality(total_responses=len(preference) + len(taste), completion_rate=0.8),
        is_sample=True,
    )


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class SurveyDataAssembler:
    """
    Fetch + parse every configured feed into a SurveyDataset.

    Feeds are fetched one after another. A failure on a required feed either
    yields sample_dataset() (permit_fallback=True) or propagates; optional
    feeds fail soft and are recorded in dataset.errors.
    """

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        feeds: Optional[Sequence[FeedConfig]] = None,
        *,
        fetcher: Optional[FeedFetcher] = None,
        cache: Optional[FeedCache] = None,
    ) -> None:
        self.settings = settings or FetchSettings()
        self.feeds = tuple(feeds) if feeds is not None else default_feeds()
        self.fetcher = fetcher or FeedFetcher(self.settings)
        self.cache = cache

    def assemble(self, permit_fallback: bool = True) -> SurveyDataset:
        unconfigured = [f.name for f in self.feeds if f.required and config.UNCONFIGURED_MARKER in f.url]
        if unconfigured:
            logger.warning("Feeds %s are not configured, using sample data", unconfigured)
            return sample_dataset()

        loaded: Dict[str, List[Any]] = {}
        errors: List[str] = []

        try:
            for feed in self.feeds:
                if feed.required:
                    loaded[feed.name] = self.load_feed(feed)
        except DataServiceError as exc:
            logger.error("Error fetching survey data: %s", exc)
            if permit_fallback:
                logger.info("Using fallback sample data due to error")
                return sample_dataset()
            raise

        for feed in self.feeds:
            if feed.required:
                continue
            try:
                loaded[feed.name] = self.load_feed(feed)
            except DataServiceError as exc:
                logger.warning("Optional feed %s unavailable: %s", feed.name, exc)
                errors.append(f"{feed.name}: {exc}")
                loaded[feed.name] = []

        dataset = build_dataset(
            preference_data=loaded.get(PREFERENCE_SCHEMA.name, []),
            taste_test_data=loaded.get(TASTE_TEST_SCHEMA.name, []),
            coffee_data=loaded.get(COFFEE_DATA_SCHEMA.name, []),
            quality_data=loaded.get(COFFEE_QUALITY_SCHEMA.name, []),
            harshness_data=loaded.get(HARSHNESS_SCHEMA.name, []),
            errors=errors,
        )

        logger.info(
            "Survey data assembled: %s preference, %s taste test, %s coffees, quality=%s",
            len(dataset.preference_data),
            len(dataset.taste_test_data),
            len(dataset.unique_coffees),
            dataset.data_quality,
        )
        return dataset

    def load_feed(self, feed: FeedConfig) -> List[Any]:
        """Fetch (or read from cache) and parse one feed."""
        cache_key = f"{feed.name}:{feed.url}"

        if self.cache is not None and feed.cache_ttl_seconds:
            cached = self.cache.get(cache_key)
            if cached:
                try:
                    records = parse_feed(cached.decode("utf-8"), feed.schema)
                except (UnicodeDecodeError, ParseError) as exc:
                    logger.debug("Ignoring unusable cached %s: %s", feed.name, exc)
                    records = []
                if records:
                    logger.debug("Using cached %s (%s records)", feed.name, len(records))
                    return records

        text = self.fetcher.fetch_text(feed.url)
        records = parse_feed(text, feed.schema)

        if self.cache is not None and feed.cache_ttl_seconds:
            self.cache.put(cache_key, text.encode("utf-8"), now_ms() + feed.cache_ttl_seconds * 1000)

        return records


def fetch_all_survey_data(
    permit_fallback: bool = True,
    *,
    settings: Optional[FetchSettings] = None,
    cache: Optional[FeedCache] = None,
) -> SurveyDataset:
    return SurveyDataAssembler(settings or FetchSettings.from_env(), cache=cache).assemble(permit_fallback)


# ---------------------------------------------------------------------------
# Personalization
# ---------------------------------------------------------------------------

# Feeds a participant must appear in before personalized results unlock
PERSONALIZATION_FEEDS = ("preference_data", "taste_test_data")


@dataclass(frozen=True)
class PersonalizedView:
    participant_id: Optional[str]
    has_user_id: bool
    has_preference_response: bool
    has_taste_test_response: bool
    can_view_personalized_results: bool
    preference_response: Optional[PreferenceResponse] = None
    taste_test_responses: Tuple[TasteTestResponse, ...] = ()
    harshness: Optional[ParticipantHarshnessEstimate] = None


def personalize(dataset: SurveyDataset, participant_id: Optional[str]) -> PersonalizedView:
    """
    Look up one participant's own rows.

    A missing id is not an error: it just means nothing can be personalized.
    """
    if not participant_id:
        return PersonalizedView(
            participant_id=None,
            has_user_id=False,
            has_preference_response=False,
            has_taste_test_response=False,
            can_view_personalized_results=False,
        )

    membership = {
        feed: any(r.uuid == participant_id for r in getattr(dataset, feed))
        for feed in PERSONALIZATION_FEEDS
    }

    preference = next((r for r in dataset.preference_data if r.uuid == participant_id), None)
    taste = tuple(r for r in dataset.taste_test_data if r.uuid == participant_id)
    harshness = next((h for h in dataset.harshness_data if h.uuid == participant_id), None)

    return PersonalizedView(
        participant_id=participant_id,
        has_user_id=True,
        has_preference_response=membership["preference_data"],
        has_taste_test_response=membership["taste_test_data"],
        can_view_personalized_results=all(membership.values()),
        preference_response=preference,
        taste_test_responses=taste,
        harshness=harshness,
    )


@dataclass(frozen=True)
class UserCoffeePreferences:
    participant_id: Optional[str]
    favorite_coffees: Tuple[str, ...] = ()
    least_favorite_coffees: Tuple[str, ...] = ()
    user_ratings: Dict[str, float] = field(default_factory=dict)


def user_coffee_preferences(
    taste_test_data: Sequence[TasteTestResponse], participant_id: Optional[str]
) -> UserCoffeePreferences:
    """
    Which coffees the participant rated highest and lowest (ties kept).

    With a single rated coffee, or all ratings equal, neither list is filled.
    """
    if not participant_id:
        return UserCoffeePreferences(participant_id=None)

    ratings: Dict[str, float] = {}
    for r in taste_test_data:
        if r.uuid == participant_id:
            ratings[r.which_coffee] = r.overall_enjoyment

    if len(ratings) < 2:
        return UserCoffeePreferences(participant_id=participant_id, user_ratings=ratings)

    best = max(ratings.values())
    worst = min(ratings.values())
    if best == worst:
        return UserCoffeePreferences(participant_id=participant_id, user_ratings=ratings)

    prefs = UserCoffeePreferences(
        participant_id=participant_id,
        favorite_coffees=tuple(c for c, v in ratings.items() if v == best),
        least_favorite_coffees=tuple(c for c, v in ratings.items() if v == worst),
        user_ratings=ratings,
    )
    logger.debug("Participant %s preferences: %s", participant_id, prefs)
    return prefs


# ---------------------------------------------------------------------------
# Per-coffee taste statistics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OptionShare:
    option: str
    percentage: float
    count: int


@dataclass(frozen=True)
class CoffeeTasteStats:
    coffee_id: str
    average_aroma: float
    average_flavor: float
    average_aftertaste: float
    average_overall_enjoyment: float
    total_ratings: int
    most_common_body: Optional[OptionShare]
    most_common_acidity: Optional[OptionShare]


def _most_common(values: Iterable[str], total: int) -> Optional[OptionShare]:
    counts = Counter(v.strip() for v in values if v and v.strip())
    if not counts or total <= 0:
        return None
    # Counter keeps first-seen order, so max() resolves ties to the earliest answer
    option, count = max(counts.items(), key=lambda kv: kv[1])
    return OptionShare(option=option, percentage=count / total * 100, count=count)


def calculate_coffee_taste_stats(taste_test_data: Sequence[TasteTestResponse]) -> List[CoffeeTasteStats]:
    """Averages and most common body/acidity per coffee, sorted by coffee id."""
    if not taste_test_data:
        return []

    df = pd.DataFrame.from_records([asdict(r) for r in taste_test_data])

    stats: List[CoffeeTasteStats] = []
    for coffee_id, grp in df.groupby("which_coffee", sort=True):
        n = len(grp)
        stats.append(
            CoffeeTasteStats(
                coffee_id=str(coffee_id),
                average_aroma=float(grp["aroma"].mean()),
                average_flavor=float(grp["flavor"].mean()),
                average_aftertaste=float(grp["aftertaste"].mean()),
                average_overall_enjoyment=float(grp["overall_enjoyment"].mean()),
                total_ratings=n,
                most_common_body=_most_common(grp["body"].tolist(), n),
                most_common_acidity=_most_common(grp["acidity"].tolist(), n),
            )
        )

    logger.debug("Calculated taste stats for %s coffees", len(stats))
    return stats

