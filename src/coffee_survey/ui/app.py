from __future__ import annotations

import logging
import time
import traceback
from dataclasses import asdict
from typing import List, Optional

import pandas as pd
import streamlit as st

from coffee_survey import config
from coffee_survey.config import APP_NAME, APP_VERSION, FetchSettings
from coffee_survey.core.cache import FileCache
from coffee_survey.core.data_loader import probe_url, timed_fetch_text
from coffee_survey.core.dataset import (
    SurveyDataset,
    calculate_coffee_taste_stats,
    fetch_all_survey_data,
    personalize,
)
from coffee_survey.core.errors import DataServiceError
from coffee_survey.core.report import ParticipantReport, build_comparison_report

DATASET_KEY = "survey_dataset"

FEED_TABLES = ["taste_test_data", "preference_data", "coffee_data", "quality_data", "harshness_data"]


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _current_dataset() -> Optional[SurveyDataset]:
    return st.session_state.get(DATASET_KEY)


def _render_data_status() -> None:
    with st.expander("Survey feeds (developer view)", expanded=True):
        col_a, col_b = st.columns([1, 2])
        with col_a:
            permit_fallback = st.checkbox("Fall back to sample data on failure", value=True)
        with col_b:
            use_cache = st.checkbox("Use on-disk cache for coffee metadata", value=True)

        if st.button("Load survey data"):
            t0 = time.perf_counter()
            try:
                with st.spinner("Fetching published sheets..."):
                    cache = FileCache(config.CACHE_DIR) if use_cache else None
                    dataset = fetch_all_survey_data(bool(permit_fallback), cache=cache)
                st.session_state[DATASET_KEY] = dataset
                st.success(f"Survey data loaded in {time.perf_counter() - t0:0.2f}s.")
            except DataServiceError as err:
                st.error(f"Survey data could not be loaded ({err.kind}): {err}")
                st.text_area("Traceback", value=traceback.format_exc(), height=220)

        dataset = _current_dataset()
        if dataset is None:
            st.write("No data loaded yet.")
            return

        if dataset.is_sample:
            st.warning("Showing built-in sample data, not live survey responses.")
        for message in dataset.errors:
            st.warning(f"Optional feed unavailable: {message}")

        m1, m2, m3 = st.columns(3)
        m1.metric("Total responses", dataset.data_quality.total_responses)
        m2.metric("Completion rate", f"{dataset.data_quality.completion_rate:.0%}")
        m3.metric("Coffees", len(dataset.unique_coffees))

        feed = st.selectbox("Feed table", options=FEED_TABLES, index=0)
        st.dataframe(dataset.to_frame(feed), use_container_width=True)

        stats = calculate_coffee_taste_stats(dataset.taste_test_data)
        if stats:
            st.write("Per-coffee averages:")
            st.dataframe(pd.DataFrame([asdict(s) for s in stats]), use_container_width=True)


def _render_probe() -> None:
    with st.expander("Feed URL probe (developer view)", expanded=False):
        url = st.text_input("Published CSV URL:", value=config.TASTE_TEST_URL)
        if st.button("Probe URL"):
            try:
                with st.spinner("Probing..."):
                    report = probe_url(url.strip(), timeout_seconds=FetchSettings.from_env().timeout_seconds)
                if report.any_success:
                    st.success("At least one request shape returned data.")
                else:
                    st.warning("Every request shape failed.")
                for issue in report.diagnostic.issues:
                    st.write(f"- {issue}")
                st.dataframe(pd.DataFrame([asdict(r) for r in report.results]), use_container_width=True)
            except Exception as e:
                st.error("Unexpected error while probing the URL.")
                st.code(repr(e))
                st.text_area("Traceback", value=traceback.format_exc(), height=220)

        if st.button("Fetch with all strategies and retries"):
            try:
                with st.spinner("Fetching..."):
                    text, elapsed = timed_fetch_text(url.strip(), settings=FetchSettings.from_env())
                st.success(f"Fetched {len(text.splitlines())} lines in {elapsed:0.2f}s.")
                st.code(text[:500])
            except DataServiceError as err:
                st.error(f"Fetch failed ({err.kind}): {err}")
                st.text_area("Traceback", value=traceback.format_exc(), height=220)


def _report_rows(report: ParticipantReport) -> List[dict]:
    rows = []
    for c in report.coffee_ratings:
        rows.append(
            {
                "Coffee": c.coffee_id,
                "Your rating": c.user_rating,
                "Average rating": c.result.average_rating,
                "Percentile": c.result.percentile,
                "Comparison": c.result.comparison,
                "Ratings": c.result.total_ratings,
            }
        )
    return rows


def _render_personalized_report() -> None:
    with st.expander("Personalized comparison (developer view)", expanded=True):
        dataset = _current_dataset()
        if dataset is None:
            st.write("Load survey data first.")
            return

        participant_id = st.text_input("Participant UUID:", value="").strip() or None
        if not st.button("Build comparison report"):
            return

        view = personalize(dataset, participant_id)
        st.write(
            f"In preference feed: {view.has_preference_response}, "
            f"in taste test feed: {view.has_taste_test_response}"
        )
        if not view.can_view_personalized_results:
            st.info("Personalized results need a response in both the preference survey and the taste test.")
            return

        try:
            report = build_comparison_report(dataset, participant_id)
        except Exception as e:
            st.error("Unexpected error while building the report.")
            st.code(repr(e))
            st.text_area("Traceback", value=traceback.format_exc(), height=280)
            return

        profile = report.comparison.overall_profile
        if profile is not None:
            st.subheader(profile.primary_category.replace("_", " ").title())
            st.write(profile.description)

        for statement in report.statements.values():
            st.write(f"- {statement}")
        for c in report.coffee_ratings:
            st.write(f"- {c.statement}")

        rows = _report_rows(report)
        if rows:
            st.dataframe(pd.DataFrame(rows), use_container_width=True)

        notes = report.comparison.tasting_notes
        if notes is not None:
            st.write("Common notes: " + (", ".join(n.note for n in notes.common_notes) or "(none)"))
            st.write("Unique notes: " + (", ".join(n.note for n in notes.unique_notes) or "(none)"))


def run_app() -> None:
    _configure_logging()
    st.set_page_config(page_title=APP_NAME, page_icon="☕", layout="wide")
    st.title(APP_NAME)
    st.caption(f"Prototype version {APP_VERSION}")

    _render_data_status()
    _render_probe()
    _render_personalized_report()
