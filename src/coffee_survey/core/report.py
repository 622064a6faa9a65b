from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from coffee_survey.core.dataset import SurveyDataset, personalize, user_coffee_preferences
from coffee_survey.core.feed_parser import TasteTestResponse
from coffee_survey.core.percentiles import (
    AggregateProfileData,
    CategoricalResult,
    CoffeeRatingResult,
    ComparisonReport,
    UserProfileData,
    categorical_percentile,
    categorize_profile,
    coffee_rating_percentile,
    generate_comparison_statement,
    generate_comprehensive_comparison,
)

logger = logging.getLogger(__name__)


@dataclass
class CoffeeRatingComparison:
    """One coffee the participant rated, compared with everyone's rating of it."""
    coffee_id: str
    user_rating: float
    result: CoffeeRatingResult
    statement: str


@dataclass
class ParticipantReport:
    """
    Everything the personalized results page shows for one participant.

    `comparison` holds the raw engine output; `statements` holds the
    sentences derived from it, keyed by dimension (brewing_method,
    favorite_coffee, worst_coffee, preference, generosity, consistency).
    """
    participant_id: Optional[str]
    can_view_personalized_results: bool
    comparison: ComparisonReport
    favorite_coffees: Tuple[str, ...] = ()
    least_favorite_coffees: Tuple[str, ...] = ()
    preference: Optional[CategoricalResult] = None
    coffee_ratings: List[CoffeeRatingComparison] = field(default_factory=list)
    statements: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Aggregation helpers
# ---------------------------------------------------------------------------

def _rows_by_participant(rows: Sequence[TasteTestResponse]) -> Dict[str, List[TasteTestResponse]]:
    grouped: Dict[str, List[TasteTestResponse]] = {}
    for r in rows:
        grouped.setdefault(r.uuid, []).append(r)
    return grouped


def _notes(rows: Sequence[TasteTestResponse]) -> List[str]:
    out: List[str] = []
    for r in rows:
        out.extend(r.notes())
    return out


def _brew_method(dataset: SurveyDataset, coffee_id: Optional[str]) -> Optional[str]:
    if not coffee_id:
        return None
    info = dataset.coffee_info(coffee_id)
    if info is None or not info.brew_method:
        return None
    return info.brew_method


def build_aggregate_data(dataset: SurveyDataset) -> AggregateProfileData:
    """
    Reduce the whole taste-test feed to per-participant engine inputs.

    A participant's favorite (and worst) coffee is the first of their tied
    top (bottom) coffees; participants without a clear favorite are left out
    of the favorite, worst and brewing-method lists.
    """
    favorites: List[str] = []
    worsts: List[str] = []
    brewing: List[str] = []
    all_ratings: List[List[float]] = []
    all_notes: List[List[str]] = []

    for uuid, rows in _rows_by_participant(dataset.taste_test_data).items():
        prefs = user_coffee_preferences(rows, uuid)
        all_ratings.append(list(prefs.user_ratings.values()))
        all_notes.append(_notes(rows))

        if prefs.favorite_coffees:
            favorite = prefs.favorite_coffees[0]
            favorites.append(favorite)
            method = _brew_method(dataset, favorite)
            if method:
                brewing.append(method)
        if prefs.least_favorite_coffees:
            worsts.append(prefs.least_favorite_coffees[0])

    return AggregateProfileData(
        brewing_methods=brewing,
        favorite_choices=favorites,
        worst_choices=worsts,
        all_ratings=all_ratings,
        all_tasting_notes=all_notes,
    )


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def _empty_report(participant_id: Optional[str]) -> ParticipantReport:
    comparison = ComparisonReport()
    comparison.overall_profile = categorize_profile(comparison)
    return ParticipantReport(
        participant_id=participant_id,
        can_view_personalized_results=False,
        comparison=comparison,
    )


def _statements(report: ParticipantReport) -> Dict[str, str]:
    comparison = report.comparison
    out: Dict[str, str] = {}

    if comparison.brewing_method is not None:
        out["brewing_method"] = generate_comparison_statement(
            comparison.brewing_method.agreement_percentage,
            "preferred brewing method",
            include_value=False,
            comparison_type="similar",
        )

    prefs = comparison.coffee_preferences
    if prefs is not None:
        out["favorite_coffee"] = generate_comparison_statement(
            prefs.favorite.agreement_percentage,
            "favorite coffee",
            report.favorite_coffees[0] if report.favorite_coffees else None,
            include_value=bool(report.favorite_coffees),
            comparison_type="similar",
        )
        if prefs.worst is not None:
            out["worst_coffee"] = generate_comparison_statement(
                prefs.worst.agreement_percentage,
                "least favorite coffee",
                report.least_favorite_coffees[0] if report.least_favorite_coffees else None,
                include_value=bool(report.least_favorite_coffees),
                comparison_type="similar",
            )

    if report.preference is not None:
        out["preference"] = generate_comparison_statement(
            report.preference.agreement_percentage,
            "drink preference",
            include_value=False,
            comparison_type="similar",
        )

    performance = comparison.taste_test_performance
    if performance is not None:
        out["generosity"] = generate_comparison_statement(
            performance.generosity_percentile, "average rating", include_value=False,
        )
        out["consistency"] = generate_comparison_statement(
            performance.consistency_percentile, "rating consistency", include_value=False,
        )

    return out


def build_comparison_report(dataset: SurveyDataset, participant_id: Optional[str]) -> ParticipantReport:
    """
    Compare one participant against everyone in `dataset`.

    Participants who cannot view personalized results (no id, or missing
    from the preference or taste-test feed) get an empty report whose profile
    is the default balanced_taster.
    """
    view = personalize(dataset, participant_id)
    if not view.can_view_personalized_results:
        logger.info("No personalized report for participant %r", participant_id)
        return _empty_report(view.participant_id)

    mine = list(view.taste_test_responses)
    prefs = user_coffee_preferences(mine, participant_id)
    favorite = prefs.favorite_coffees[0] if prefs.favorite_coffees else None
    worst = prefs.least_favorite_coffees[0] if prefs.least_favorite_coffees else None

    user = UserProfileData(
        favorite_brewing_method=_brew_method(dataset, favorite),
        favorite_coffee=favorite,
        worst_coffee=worst,
        ratings=dict(prefs.user_ratings),
        tasting_notes=_notes(mine),
    )
    aggregate = build_aggregate_data(dataset)

    report = ParticipantReport(
        participant_id=participant_id,
        can_view_personalized_results=True,
        comparison=generate_comprehensive_comparison(user, aggregate),
        favorite_coffees=prefs.favorite_coffees,
        least_favorite_coffees=prefs.least_favorite_coffees,
    )

    if view.preference_response is not None:
        report.preference = categorical_percentile(
            view.preference_response.preference,
            [p.preference for p in dataset.preference_data],
        )

    # Per-coffee rating percentiles
    enjoyment_by_coffee: Dict[str, List[float]] = {}
    for r in dataset.taste_test_data:
        enjoyment_by_coffee.setdefault(r.which_coffee, []).append(r.overall_enjoyment)

    for coffee_id, rating in prefs.user_ratings.items():
        result = coffee_rating_percentile(rating, enjoyment_by_coffee.get(coffee_id, []))
        report.coffee_ratings.append(
            CoffeeRatingComparison(
                coffee_id=coffee_id,
                user_rating=rating,
                result=result,
                statement=generate_comparison_statement(
                    result.percentile, f"rating of Coffee {coffee_id}", rating,
                ),
            )
        )

    report.statements = _statements(report)

    profile = report.comparison.overall_profile
    logger.info(
        "Built comparison report for %s: %s coffees rated, profile=%s",
        participant_id,
        len(report.coffee_ratings),
        profile.primary_category if profile else None,
    )
    return report
