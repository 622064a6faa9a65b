"""
Percentile and comparison statistics for taste test results.

Everything here is pure: no I/O, no shared state, and no exceptions for bad
input. Empty or invalid data yields None (or an empty result object) so the
presentation layer can call these speculatively.
"""
from __future__ import annotations

import math
import numbers
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

# Note prevalence thresholds (percent of participants)
COMMON_NOTE_THRESHOLD = 20.0
UNIQUE_NOTE_THRESHOLD = 5.0

# Rating scale bounds for the taste test form
MIN_RATING = 0.5
MAX_RATING = 5.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_number(x: Any) -> bool:
    # numbers.Real also admits numpy scalars coming out of pandas columns
    return isinstance(x, numbers.Real) and not isinstance(x, bool) and math.isfinite(x)


def _numbers(values: Any) -> List[float]:
    if not isinstance(values, (list, tuple)):
        return []
    return [float(v) for v in values if _is_number(v)]


def _round_half_up(x: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(x * factor + 0.5) / factor


def _fmt(x: Any, digits: int = 0) -> str:
    """82.0 -> '82', 82.5 -> '82.5'; non-numbers pass through str()."""
    if not _is_number(x):
        return str(x)
    text = f"{_round_half_up(float(x), max(digits, 0)):.{max(digits, 0)}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _fmt_value(x: Any) -> str:
    """Statement values are shown as given; only a trailing '.0' is dropped."""
    if _is_number(x) and float(x).is_integer():
        return str(int(x))
    return str(x)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    nums = _numbers(values)
    if len(nums) <= 1:
        return 0.0
    mean = _mean(nums)
    return math.sqrt(sum((v - mean) ** 2 for v in nums) / len(nums))


# ---------------------------------------------------------------------------
# Numeric percentiles
# ---------------------------------------------------------------------------

def percentile_rank(value: float, dataset: Sequence[float], exclusive: bool = False) -> Optional[float]:
    """
    Share of `dataset` below `value`, as 0-100.

    Inclusive (default) counts values <= `value`; exclusive counts values
    strictly below. Non-numeric and non-finite entries are ignored; None when
    nothing numeric is left.
    """
    nums = _numbers(dataset)
    if not nums or not _is_number(value):
        return None

    if exclusive:
        count = sum(1 for x in nums if x < value)
    else:
        count = sum(1 for x in nums if x <= value)
    return count / len(nums) * 100


PERCENTILE_METHODS = ("linear", "nearest", "lower", "higher")


def percentile_value(dataset: Sequence[float], percentile: float, method: str = "linear") -> Optional[float]:
    """
    Value at `percentile` (0-100) of `dataset`.

    Index is percentile/100 * (n - 1) over the ascending data. `linear`
    interpolates between the neighbours (the usual "type 7" estimator);
    `nearest` rounds the index, `lower`/`higher` floor/ceil it. Unknown
    methods fall back to `linear`.
    """
    if not _is_number(percentile) or percentile < 0 or percentile > 100:
        return None
    nums = sorted(_numbers(dataset))
    if not nums:
        return None
    if len(nums) == 1:
        return nums[0]

    index = percentile / 100 * (len(nums) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)

    if method not in PERCENTILE_METHODS:
        method = "linear"

    if method == "nearest":
        return nums[int(math.floor(index + 0.5))]
    if method == "lower":
        return nums[lower]
    if method == "higher":
        return nums[upper]

    if lower == upper:
        return nums[lower]
    weight = index - lower
    return nums[lower] * (1 - weight) + nums[upper] * weight


# ---------------------------------------------------------------------------
# Categorical comparisons
# ---------------------------------------------------------------------------

@dataclass
class CategoricalResult:
    agreement_percentage: Optional[float]
    rank: Optional[int]
    total_choices: int
    distribution: List[Tuple[str, int]] = field(default_factory=list)


def categorical_percentile(choice: Optional[str], dataset: Sequence[Optional[str]]) -> CategoricalResult:
    """
    How common the participant's answer is among everyone's answers.

    agreement_percentage is relative to all entries (blank ones included),
    rounded to 2 decimals. rank is 1 for the most popular answer; answers
    with equal counts keep the order in which they were first seen.
    """
    if not choice or not isinstance(dataset, (list, tuple)) or len(dataset) == 0:
        return CategoricalResult(agreement_percentage=None, rank=None, total_choices=0)

    counts: Counter[str] = Counter()
    for answer in dataset:
        if answer:
            counts[str(answer).strip()] += 1

    wanted = str(choice).strip()
    agreement = counts.get(wanted, 0) / len(dataset) * 100

    # sorted() is stable and Counter keeps first-seen order
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    rank = next((i + 1 for i, (label, _) in enumerate(ranked) if label == wanted), None)

    return CategoricalResult(
        agreement_percentage=_round_half_up(agreement, 2),
        rank=rank,
        total_choices=len(counts),
        distribution=ranked,
    )


def agreement_percentage(choice: Optional[str], all_choices: Sequence[Optional[str]]) -> Optional[float]:
    """Percent of answers matching `choice`, ignoring case and surrounding space."""
    if not choice or not isinstance(all_choices, (list, tuple)) or len(all_choices) == 0:
        return None
    wanted = choice.strip().lower()
    matching = sum(1 for c in all_choices if c and c.strip().lower() == wanted)
    return _round_half_up(matching / len(all_choices) * 100, 2)


# ---------------------------------------------------------------------------
# Coffee ratings
# ---------------------------------------------------------------------------

@dataclass
class CoffeeRatingResult:
    percentile: Optional[float]
    comparison: Optional[str]       # much_higher / higher / similar / lower / much_lower
    average_rating: Optional[float]
    distribution: Dict[float, int] = field(default_factory=dict)
    total_ratings: int = 0


def _rating_buckets() -> List[float]:
    return [step / 2 for step in range(1, 11)]      # 0.5, 1.0, ... 5.0


def coffee_rating_percentile(user_rating: Optional[float], all_ratings: Sequence[float]) -> CoffeeRatingResult:
    """
    Where one participant's rating of a coffee sits among everyone's.

    Only ratings on the 0.5..5 scale count. The comparison bucket is measured
    against the average: more than 0.5 above is much_higher, more than 0.2
    above is higher, and symmetrically below; otherwise similar.
    """
    empty = CoffeeRatingResult(percentile=None, comparison=None, average_rating=None)
    if not user_rating or not _is_number(user_rating):
        return empty

    valid = [r for r in _numbers(all_ratings) if MIN_RATING <= r <= MAX_RATING]
    if not valid:
        return empty

    rank = percentile_rank(user_rating, valid)
    average = _mean(valid)
    distribution = {bucket: sum(1 for r in valid if r == bucket) for bucket in _rating_buckets()}

    if user_rating > average + 0.5:
        comparison = "much_higher"
    elif user_rating > average + 0.2:
        comparison = "higher"
    elif user_rating < average - 0.5:
        comparison = "much_lower"
    elif user_rating < average - 0.2:
        comparison = "lower"
    else:
        comparison = "similar"

    return CoffeeRatingResult(
        percentile=_round_half_up(rank, 2) if rank is not None else None,
        comparison=comparison,
        average_rating=_round_half_up(average, 2),
        distribution=distribution,
        total_ratings=len(valid),
    )


@dataclass
class PerformanceResult:
    average_rating_percentile: Optional[float]
    generosity_percentile: Optional[float]
    consistency_percentile: Optional[float]


def overall_performance_percentile(
    user_ratings: Sequence[float], all_participant_ratings: Sequence[Sequence[float]]
) -> PerformanceResult:
    """
    Compare a participant's rating habits with everyone else's.

    Each participant is reduced to the mean and standard deviation of their
    ratings. Generosity ranks the mean; consistency ranks the negated
    spread, so a tighter spread scores a higher percentile.
    """
    empty = PerformanceResult(None, None, None)
    if not isinstance(user_ratings, (list, tuple)) or not isinstance(all_participant_ratings, (list, tuple)):
        return empty

    mine = _numbers(user_ratings)
    if not mine:
        return empty

    others = [_numbers(r) for r in all_participant_ratings]
    others = [r for r in others if r]

    user_average = _mean(mine)
    user_spread = standard_deviation(mine)
    averages = [_mean(r) for r in others]
    spreads = [standard_deviation(r) for r in others]

    average_percentile = percentile_rank(user_average, averages)
    return PerformanceResult(
        average_rating_percentile=average_percentile,
        generosity_percentile=average_percentile,
        consistency_percentile=percentile_rank(-user_spread, [-s for s in spreads]),
    )


# ---------------------------------------------------------------------------
# Tasting notes
# ---------------------------------------------------------------------------

@dataclass
class NoteShare:
    note: str
    percentage: int


@dataclass
class TastingNotesResult:
    common_notes: List[NoteShare] = field(default_factory=list)
    unique_notes: List[NoteShare] = field(default_factory=list)
    popularity_percentiles: Dict[str, float] = field(default_factory=dict)


def _normalize_notes(notes: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for note in notes:
        text = str(note).strip().lower() if note else ""
        if text:
            out.append(text)
    return out


def tasting_notes_comparison(
    user_notes: Sequence[str], all_notes: Sequence[Sequence[str]]
) -> TastingNotesResult:
    """
    Classify the participant's notes by how many participants used them.

    Prevalence is note occurrences over the number of participants. A note at
    20% or more is common, under 5% is unique; the thresholds are fixed.
    """
    if not isinstance(user_notes, (list, tuple)) or not isinstance(all_notes, (list, tuple)) or not all_notes:
        return TastingNotesResult()

    counts: Counter[str] = Counter()
    for participant_notes in all_notes:
        if isinstance(participant_notes, str):
            participant_notes = [participant_notes]
        counts.update(_normalize_notes(participant_notes or []))

    result = TastingNotesResult()
    for note in dict.fromkeys(_normalize_notes(user_notes)):
        percentage = counts.get(note, 0) / len(all_notes) * 100
        result.popularity_percentiles[note] = percentage

        if percentage >= COMMON_NOTE_THRESHOLD:
            result.common_notes.append(NoteShare(note, int(_round_half_up(percentage))))
        elif percentage < UNIQUE_NOTE_THRESHOLD:
            result.unique_notes.append(NoteShare(note, int(_round_half_up(percentage))))

    result.common_notes.sort(key=lambda n: n.percentage, reverse=True)
    result.unique_notes.sort(key=lambda n: n.percentage)
    return result


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def generate_comparison_statement(
    percentile: Optional[float],
    metric: str,
    value: Any = None,
    *,
    include_value: bool = True,
    precision: int = 0,
    comparison_type: str = "higher",
) -> str:
    """
    Human-readable sentence for a percentile.

    comparison_type:
      - 'higher'  : seven bands (>=95, >=90, >=75, >=50, >=25, >=10, below)
      - 'similar' : "<p>% of participants share your ..."
      - 'lower'   : three bands on the reversed percentile (>=95, >=75, below)
    """
    if percentile is None or not _is_number(percentile):
        return f"Unable to compare your {metric}."

    rounded = _round_half_up(float(percentile), precision)
    pct = _fmt(rounded, precision)
    value_text = f" ({_fmt_value(value)})" if include_value else ""

    if comparison_type == "higher":
        if rounded >= 95:
            return f"Your {metric}{value_text} ranks in the top 5% of all participants - truly exceptional!"
        if rounded >= 90:
            return f"Your {metric}{value_text} is higher than {pct}% of participants - you're in the top 10%!"
        if rounded >= 75:
            return f"Your {metric}{value_text} is higher than {pct}% of participants - well above average."
        if rounded >= 50:
            return f"Your {metric}{value_text} is higher than {pct}% of participants - above average."
        if rounded >= 25:
            return f"Your {metric}{value_text} is higher than {pct}% of participants - below average."
        if rounded >= 10:
            return (
                f"Your {metric}{value_text} is higher than only {pct}% of participants"
                " - you're quite conservative."
            )
        return f"Your {metric}{value_text} is in the bottom 10% - you're very selective!"

    if comparison_type == "similar":
        return f"{pct}% of participants share your {metric}{value_text}."

    # 'lower' (and anything unrecognised)
    reverse = 100 - rounded
    if reverse >= 95:
        return f"Your {metric}{value_text} is more critical than 95% of participants - very discerning taste!"
    if reverse >= 75:
        return f"Your {metric}{value_text} is more critical than {_fmt(reverse, precision)}% of participants."
    return f"Your {metric}{value_text} aligns with {pct}% of participants."


# ---------------------------------------------------------------------------
# Comprehensive comparison + profile
# ---------------------------------------------------------------------------

@dataclass
class UserProfileData:
    favorite_brewing_method: Optional[str] = None
    favorite_coffee: Optional[str] = None
    worst_coffee: Optional[str] = None
    ratings: Dict[str, float] = field(default_factory=dict)
    tasting_notes: Optional[List[str]] = None


@dataclass
class AggregateProfileData:
    brewing_methods: Optional[List[str]] = None
    favorite_choices: Optional[List[str]] = None
    worst_choices: Optional[List[str]] = None
    all_ratings: Optional[List[List[float]]] = None
    all_tasting_notes: Optional[List[List[str]]] = None


@dataclass
class CoffeePreferenceComparison:
    favorite: CategoricalResult
    worst: Optional[CategoricalResult] = None


@dataclass
class ProfileResult:
    categories: List[str]
    primary_category: str
    description: str


@dataclass
class ComparisonReport:
    brewing_method: Optional[CategoricalResult] = None
    coffee_preferences: Optional[CoffeePreferenceComparison] = None
    taste_test_performance: Optional[PerformanceResult] = None
    tasting_notes: Optional[TastingNotesResult] = None
    overall_profile: Optional[ProfileResult] = None


PROFILE_DESCRIPTIONS: Dict[str, str] = {
    "mainstream_brewer": "You prefer popular brewing methods",
    "unique_brewer": "You have unique brewing preferences",
    "generous_rater": "You tend to rate coffees generously",
    "critical_rater": "You have discerning taste in coffee",
    "consistent_taster": "You have consistent tasting preferences",
    "varied_taster": "You appreciate diverse coffee experiences",
    "descriptive_taster": "You notice unique flavors and notes",
    "conventional_taster": "You identify classic coffee characteristics",
    "balanced_taster": "You have well-balanced coffee preferences",
}

DEFAULT_PROFILE = "balanced_taster"


def profile_description(categories: Sequence[str]) -> str:
    if not categories:
        return PROFILE_DESCRIPTIONS[DEFAULT_PROFILE]
    return ", ".join(PROFILE_DESCRIPTIONS.get(c, PROFILE_DESCRIPTIONS[DEFAULT_PROFILE]) for c in categories)


def categorize_profile(report: ComparisonReport) -> ProfileResult:
    """
    Tag the participant from an assembled comparison report.

    Rules run in a fixed order (brewing, generosity, consistency, notes) and
    each dimension contributes at most one tag. No tag means balanced_taster.
    """
    categories: List[str] = []

    brewing = report.brewing_method
    if brewing is not None and brewing.agreement_percentage is not None:
        if brewing.agreement_percentage >= 40:
            categories.append("mainstream_brewer")
        elif brewing.agreement_percentage <= 10:
            categories.append("unique_brewer")

    performance = report.taste_test_performance
    if performance is not None and performance.generosity_percentile is not None:
        if performance.generosity_percentile >= 75:
            categories.append("generous_rater")
        elif performance.generosity_percentile <= 25:
            categories.append("critical_rater")

    if performance is not None and performance.consistency_percentile is not None:
        if performance.consistency_percentile >= 75:
            categories.append("consistent_taster")
        elif performance.consistency_percentile <= 25:
            categories.append("varied_taster")

    notes = report.tasting_notes
    if notes is not None:
        if len(notes.unique_notes) > 2:
            categories.append("descriptive_taster")
        elif len(notes.common_notes) > 3:
            categories.append("conventional_taster")

    return ProfileResult(
        categories=categories,
        primary_category=categories[0] if categories else DEFAULT_PROFILE,
        description=profile_description(categories),
    )


def generate_comprehensive_comparison(user: UserProfileData, aggregate: AggregateProfileData) -> ComparisonReport:
    """Run every comparison the inputs allow, then categorize the profile."""
    report = ComparisonReport()

    if user.favorite_brewing_method and aggregate.brewing_methods:
        report.brewing_method = categorical_percentile(user.favorite_brewing_method, aggregate.brewing_methods)

    if user.favorite_coffee and aggregate.favorite_choices:
        report.coffee_preferences = CoffeePreferenceComparison(
            favorite=categorical_percentile(user.favorite_coffee, aggregate.favorite_choices),
            worst=(
                categorical_percentile(user.worst_coffee, aggregate.worst_choices or [])
                if user.worst_coffee
                else None
            ),
        )

    if user.ratings and aggregate.all_ratings:
        report.taste_test_performance = overall_performance_percentile(
            list(user.ratings.values()), aggregate.all_ratings
        )

    if user.tasting_notes and aggregate.all_tasting_notes:
        report.tasting_notes = tasting_notes_comparison(user.tasting_notes, aggregate.all_tasting_notes)

    report.overall_profile = categorize_profile(report)
    return report
