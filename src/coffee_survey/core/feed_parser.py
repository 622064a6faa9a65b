from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from coffee_survey.core.errors import ParseError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed records (one per published feed)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TasteTestResponse:
    uuid: str
    timestamp: str
    which_coffee: str          # coffee letter (A, B, C, ...)
    aroma: float
    flavor: float
    acidity: str               # "Pleasant Acidity", "No acidity", "Too Acidic"
    body: str                  # "Heavy", "Medium", "Light"
    aftertaste: float
    tasting_notes: str         # comma-separated free text
    overall_enjoyment: float

    def notes(self) -> List[str]:
        return [n.strip() for n in self.tasting_notes.split(",") if n.strip()]


@dataclass(frozen=True)
class PreferenceResponse:
    uuid: str
    timestamp: str
    preference: str            # Coffee / Tea / Both ("Coffee Person")
    coffees_per_day: int = 0
    teas_per_day: int = 0
    black_coffee: str = ""
    coffee_types: str = ""
    roast_preference: str = ""
    why_drink_coffee: str = ""
    other_caffeinated_drinks: int = 0
    frequency: str = ""
    why_not_more_coffee: str = ""
    decaf_coffee: str = ""
    coffee_additions: str = ""


@dataclass(frozen=True)
class CoffeeMetadata:
    coffee_id: str
    coffee_name: str
    coffee_geography: str
    process: str
    brew_method: str
    price: str                 # per cup, kept verbatim


@dataclass(frozen=True)
class CoffeeQualityEstimate:
    coffee_id: str             # "Which Coffee"
    mean_quality: float        # mean_Q
    lower_confidence: float    # p13
    upper_confidence: float    # p87
    c_value: str               # "C" column, meaning unknown upstream


@dataclass(frozen=True)
class ParticipantHarshnessEstimate:
    uuid: str
    taster_id: str
    mean_harshness: float
    p13_harshness: float
    p87_harshness: float
    mean_discrim: float
    p13_discrim: float
    p87_discrim: float


# ---------------------------------------------------------------------------
# Tokenizer + coercion helpers
# ---------------------------------------------------------------------------

def tokenize_line(line: str, delimiter: str = ",") -> List[str]:
    """
    Split one CSV line into trimmed fields.

    A double quote toggles quoted mode; delimiters inside quotes are kept.
    Quotes themselves are dropped and doubled quotes are NOT unescaped
    (published sheets rarely need it). Malformed quoting never raises; an
    unterminated quote simply swallows the rest of the line into one field.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False

    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)

    fields.append("".join(current).strip())
    return fields


_FLOAT_PREFIX = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INT_PREFIX = re.compile(r"^[+-]?\d+")


def parse_float(value: Any) -> float:
    """
    Lenient float coercion: leading numeric prefix, otherwise 0.

    "4.5 stars" -> 4.5, "" -> 0.0, "n/a" -> 0.0. Non-finite results are 0.
    """
    if value is None:
        return 0.0
    match = _FLOAT_PREFIX.match(str(value).strip())
    if not match:
        return 0.0
    try:
        number = float(match.group(0))
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_int(value: Any) -> int:
    if value is None:
        return 0
    match = _INT_PREFIX.match(str(value).strip())
    return int(match.group(0)) if match else 0


class _Row:
    """Header-keyed view over one tokenized line, with positional fallback."""

    __slots__ = ("by_name", "values")

    def __init__(self, headers: Sequence[str], values: Sequence[str]) -> None:
        self.values = list(values)
        self.by_name: Dict[str, str] = {}
        for idx, header in enumerate(headers):
            self.by_name[header.strip()] = values[idx].strip() if idx < len(values) else ""

    def text(self, name: str, position: Optional[int] = None) -> str:
        if name in self.by_name:
            return self.by_name[name]
        if position is not None and position < len(self.values):
            return self.values[position].strip()
        return ""

    def number(self, name: str, position: Optional[int] = None) -> float:
        return parse_float(self.text(name, position))

    def count(self, name: str, position: Optional[int] = None) -> int:
        return parse_int(self.text(name, position))


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedSchema:
    """
    How one feed maps onto its record type.

    min_columns=None means "at least as many fields as the header row".
    """
    name: str
    record_type: type
    min_columns: Optional[int]
    extract: Callable[[_Row], Any]
    is_valid: Callable[[Any], bool]


def _taste_test(row: _Row) -> TasteTestResponse:
    return TasteTestResponse(
        uuid=row.text("UUID"),
        timestamp=row.text("Timestamp"),
        which_coffee=row.text("Which Coffee"),
        aroma=row.number("Aroma"),
        flavor=row.number("Flavor"),
        acidity=row.text("Acidity"),
        body=row.text("Body"),
        aftertaste=row.number("Aftertaste"),
        tasting_notes=row.text("Tasting Notes"),
        overall_enjoyment=row.number("Overall Enjoyment"),
    )


def _preference(row: _Row) -> PreferenceResponse:
    return PreferenceResponse(
        uuid=row.text("UUID"),
        timestamp=row.text("Timestamp"),
        preference=row.text("Coffee Person"),
        coffees_per_day=row.count("Coffees Per Day"),
        teas_per_day=row.count("Teas Per Day"),
        black_coffee=row.text("Black Coffee"),
        coffee_types=row.text("Coffee Types"),
        roast_preference=row.text("Roast Preference"),
        why_drink_coffee=row.text("Why do you drink coffee?"),
        other_caffeinated_drinks=row.count("Other Caffeinated Drinks"),
        frequency=row.text("Frequency"),
        why_not_more_coffee=row.text("Why don't you drink more coffee?"),
        decaf_coffee=row.text("Decaf Coffee"),
        coffee_additions=row.text("Coffee Additions"),
    )


def _coffee_metadata(row: _Row) -> CoffeeMetadata:
    return CoffeeMetadata(
        coffee_id=row.text("coffee_id", 0),
        coffee_name=row.text("coffee_name", 1),
        coffee_geography=row.text("coffee_geography", 2),
        process=row.text("process", 3),
        brew_method=row.text("brew_method", 4),
        price=row.text("price", 5),
    )


def _coffee_quality(row: _Row) -> CoffeeQualityEstimate:
    return CoffeeQualityEstimate(
        coffee_id=row.text("Which Coffee", 4),
        mean_quality=row.number("mean_Q", 1),
        lower_confidence=row.number("p13", 2),
        upper_confidence=row.number("p87", 3),
        c_value=row.text("C", 0),
    )


def _harshness(row: _Row) -> ParticipantHarshnessEstimate:
    return ParticipantHarshnessEstimate(
        uuid=row.text("UUID", 0),
        taster_id=row.text("taster_id", 1),
        mean_harshness=row.number("mean_harshness", 2),
        p13_harshness=row.number("p13_harshness", 3),
        p87_harshness=row.number("p87_harshness", 4),
        mean_discrim=row.number("mean_discrim", 5),
        p13_discrim=row.number("p13_discrim", 6),
        p87_discrim=row.number("p87_discrim", 7),
    )


# Ratings are on a 0.5..5 scale; 0 means the cell was blank or unparseable
MIN_VALID_ENJOYMENT = 0.5

TASTE_TEST_SCHEMA = FeedSchema(
    name="taste_test",
    record_type=TasteTestResponse,
    min_columns=None,
    extract=_taste_test,
    is_valid=lambda r: bool(r.uuid and r.which_coffee and r.overall_enjoyment >= MIN_VALID_ENJOYMENT),
)

PREFERENCE_SCHEMA = FeedSchema(
    name="preference",
    record_type=PreferenceResponse,
    min_columns=3,
    extract=_preference,
    is_valid=lambda r: bool(r.uuid and r.preference),
)

COFFEE_DATA_SCHEMA = FeedSchema(
    name="coffee_data",
    record_type=CoffeeMetadata,
    min_columns=5,
    extract=_coffee_metadata,
    is_valid=lambda r: bool(r.coffee_id),
)

COFFEE_QUALITY_SCHEMA = FeedSchema(
    name="coffee_quality",
    record_type=CoffeeQualityEstimate,
    min_columns=5,
    extract=_coffee_quality,
    is_valid=lambda r: bool(r.coffee_id),
)

HARSHNESS_SCHEMA = FeedSchema(
    name="participant_harshness",
    record_type=ParticipantHarshnessEstimate,
    min_columns=8,
    extract=_harshness,
    is_valid=lambda r: bool(r.uuid),
)


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

def map_rows(header_line: str, data_lines: Sequence[str], schema: FeedSchema) -> List[Any]:
    """
    Map tokenized data lines onto `schema.record_type`.

    Rows with too few fields, and rows failing the schema's validity check,
    are dropped rather than reported; a published sheet with a few broken
    rows should still render.
    """
    headers = [h.strip() for h in tokenize_line(header_line)]
    min_columns = len(headers) if schema.min_columns is None else schema.min_columns

    records: List[Any] = []
    short_rows = 0
    invalid_rows = 0

    for line in data_lines:
        values = tokenize_line(line)
        if len(values) < min_columns:
            short_rows += 1
            continue

        record = schema.extract(_Row(headers, values))
        if not schema.is_valid(record):
            invalid_rows += 1
            continue
        records.append(record)

    logger.debug(
        "Mapped %s %s records (%s short rows, %s invalid rows dropped)",
        len(records), schema.name, short_rows, invalid_rows,
    )
    return records


def split_lines(text: str) -> List[str]:
    return text.strip().split("\n") if text else []


def parse_feed(text: str, schema: FeedSchema) -> List[Any]:
    """
    Parse a whole CSV document.

    Raises ParseError when there is no header + data line to work with;
    anything beyond that returns a (possibly empty) list.
    """
    lines = split_lines(text)
    if len(lines) < 2:
        raise ParseError(f"{schema.name} CSV has insufficient data: only {len(lines)} line(s)")
    return map_rows(lines[0], lines[1:], schema)
