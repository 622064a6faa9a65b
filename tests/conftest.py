"""Shared CSV fixtures: two participants, two tasted coffees, three described coffees."""
import pytest

from coffee_survey.core.dataset import build_dataset
from coffee_survey.core.feed_parser import (
    COFFEE_DATA_SCHEMA,
    PREFERENCE_SCHEMA,
    TASTE_TEST_SCHEMA,
    parse_feed,
)

TASTE_CSV = """Timestamp,UUID,Which Coffee,Aroma,Flavor,Acidity,Body,Aftertaste,Tasting Notes,Overall Enjoyment
6/2/2025 12:43:15,u1,A,4,4,Pleasant Acidity,Medium,4,"Berry, Floral",4.5
6/2/2025 12:44:15,u1,B,2,2,Too Acidic,Light,2,Earthy,2
6/2/2025 12:45:15,u2,A,3,3,No acidity,Heavy,3,Chocolate,3
6/2/2025 12:46:15,u2,B,4,4,Pleasant Acidity,Medium,4,"Berry, Nutty",4
"""

PREFERENCE_CSV = """Timestamp,UUID,Coffee Person
6/2/2025 12:40:00,u1,Coffee
6/2/2025 12:41:00,u2,Tea
"""

COFFEE_CSV = """coffee_id,coffee_name,coffee_geography,process,brew_method,price
A,Kenya AA,Kenya,Washed,Pour Over,$4
B,Sumatra,Indonesia,Wet Hulled,French Press,$3
C,Decaf,Colombia,Swiss Water,Drip,$2
"""


@pytest.fixture
def taste_csv():
    return TASTE_CSV


@pytest.fixture
def preference_csv():
    return PREFERENCE_CSV


@pytest.fixture
def coffee_csv():
    return COFFEE_CSV


@pytest.fixture
def survey_dataset():
    return build_dataset(
        preference_data=parse_feed(PREFERENCE_CSV, PREFERENCE_SCHEMA),
        taste_test_data=parse_feed(TASTE_CSV, TASTE_TEST_SCHEMA),
        coffee_data=parse_feed(COFFEE_CSV, COFFEE_DATA_SCHEMA),
    )
