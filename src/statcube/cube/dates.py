# statcube/cube/dates.py
"""
Reference periods for date dimensions.

Given a date extractor and the distinct codes found in the fact table, build
one reference row per period instance (year, quarter, month or specific day)
per locale. The rows are loaded into the dimension's lookup table and joined
against the fact table like any other lookup.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from statcube.core.i18n import language_value, t
from statcube.schemas.dataset import DateExtractor, YearType

logger = logging.getLogger(__name__)

YEAR_STARTS: dict[YearType, tuple[int, int]] = {
    YearType.CALENDAR: (1, 1),
    YearType.FINANCIAL: (4, 1),
    YearType.TAX: (4, 6),
    YearType.ACADEMIC: (9, 1),
    YearType.METEOROLOGICAL: (3, 1),
}

YEAR_FORMATS = {
    "YYYY": "{start}",
    "YYYYYYYY": "{start}{end}",
    "YYYY/YYYY": "{start}/{end}",
    "YYYY-YYYY": "{start}-{end}",
    "YYYYYY": "{start}{end_short}",
    "YYYY/YY": "{start}/{end_short}",
    "YYYY-YY": "{start}-{end_short}",
}

QUARTER_FORMATS = {
    "QX": "Q{n}",
    "_QX": "_Q{n}",
    "X": "{n}",
    "_X": "_{n}",
    "-X": "-{n}",
}

MONTH_FORMATS = ("MMM", "mMM", "mm")

SPECIFIC_DAY_FORMATS = {
    "dd/mm/yyyy": "%d/%m/%Y",
    "dd-mm-yyyy": "%d-%m-%Y",
    "yyyy-mm-dd": "%Y-%m-%d",
    "yyyymmdd": "%Y%m%d",
}

YEAR, QUARTER, MONTH, DAY = "year", "quarter", "month", "specific_day"
_RANK = {YEAR: 0, QUARTER: 1, MONTH: 2, DAY: 3}


@dataclass(frozen=True)
class DateReference:
    code: str
    language: str
    description: str
    hierarchy: Optional[str]
    date_type: str
    start: datetime
    end: datetime
    kind: str = YEAR
    sort_key: tuple = ()

    def as_row(self, sort_order: int) -> tuple:
        return (
            self.code,
            self.language,
            self.description,
            self.hierarchy,
            self.date_type,
            self.start,
            self.end,
            sort_order,
        )


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------


def add_months(value: datetime, months: int) -> datetime:
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(start: datetime, months: int) -> datetime:
    return add_months(start, months) - timedelta(seconds=1)


def year_start(extractor: DateExtractor, year: int) -> datetime:
    month, day = YEAR_STARTS.get(extractor.type, (extractor.start_month, extractor.start_day))
    day = min(day, calendar.monthrange(year, month)[1])
    return datetime(year, month, day)


# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------


def year_code(year_format: Optional[str], year: int) -> str:
    fmt = (year_format or "YYYY").upper()
    if fmt not in YEAR_FORMATS:
        raise ValueError(f"Unknown year format: {year_format}")
    return YEAR_FORMATS[fmt].format(
        start=f"{year:04d}", end=f"{year + 1:04d}", end_short=f"{(year + 1) % 100:02d}"
    )


def quarter_suffix(quarter_format: str, quarter: int) -> str:
    if quarter_format not in QUARTER_FORMATS:
        raise ValueError(f"Unknown quarter format: {quarter_format}")
    return QUARTER_FORMATS[quarter_format].format(n=quarter)


def month_suffix(month_format: str, month: int) -> str:
    if month_format == "MMM":
        return calendar.month_abbr[month]
    if month_format == "mMM":
        return f"m{month:02d}"
    if month_format == "mm":
        return f"{month:02d}"
    raise ValueError(f"Unknown month format: {month_format}")


def year_description(extractor: DateExtractor, year: int) -> str:
    if extractor.type == YearType.CALENDAR:
        return f"{year:04d}"
    return f"{year:04d}-{(year + 1) % 100:02d}"


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def year_range(values: Iterable[str]) -> tuple[int, int]:
    years = []
    for value in values:
        prefix = str(value)[:4]
        if not prefix.isdigit():
            raise ValueError(f"Cannot read a year from date value {value!r}")
        years.append(int(prefix))
    if not years:
        raise ValueError("No date values to build periods from")
    return min(years), max(years)


def _period_type(extractor: DateExtractor, kind: str, locale: str) -> str:
    return t(f"date_format.{extractor.type.value}.{kind}", locale)


def generate_periods(
    extractor: DateExtractor, first_year: int, last_year: int, locales: list[str]
) -> list[DateReference]:
    """Years always, months and quarters when their formats are set."""
    fifth_quart = bool(extractor.quarter_format and extractor.quarter_total_is_fifth_quart)
    references: list[DateReference] = []

    for year in range(first_year, last_year + 1):
        start = year_start(extractor, year)
        ycode = year_code(extractor.year_format, year)
        ydesc = year_description(extractor, year)

        for locale in locales:
            language = language_value(locale)
            quarter_abr = t("date_format.quarter_abr", locale)

            if not fifth_quart:
                references.append(
                    DateReference(
                        code=ycode,
                        language=language,
                        description=ydesc,
                        hierarchy=None,
                        date_type=_period_type(extractor, YEAR, locale),
                        start=start,
                        end=period_end(start, 12),
                        kind=YEAR,
                        sort_key=(start, _RANK[YEAR]),
                    )
                )

            if extractor.quarter_format:
                for quarter in range(1, 5):
                    qstart = add_months(start, 3 * (quarter - 1))
                    references.append(
                        DateReference(
                            code=ycode + quarter_suffix(extractor.quarter_format, quarter),
                            language=language,
                            description=f"{quarter_abr}{quarter} {ydesc}",
                            hierarchy=ycode,
                            date_type=_period_type(extractor, QUARTER, locale),
                            start=qstart,
                            end=period_end(qstart, 3),
                            kind=QUARTER,
                            sort_key=(qstart, _RANK[QUARTER]),
                        )
                    )
                if fifth_quart:
                    # the whole-year total sorts after the fourth quarter
                    yend = period_end(start, 12)
                    references.append(
                        DateReference(
                            code=ycode + quarter_suffix(extractor.quarter_format, 5),
                            language=language,
                            description=ydesc,
                            hierarchy=None,
                            date_type=_period_type(extractor, YEAR, locale),
                            start=start,
                            end=yend,
                            kind=QUARTER,
                            sort_key=(yend, _RANK[YEAR]),
                        )
                    )

            if extractor.month_format and not fifth_quart:
                for index in range(12):
                    mstart = add_months(start, index)
                    if extractor.quarter_format:
                        parent = ycode + quarter_suffix(extractor.quarter_format, index // 3 + 1)
                    else:
                        parent = ycode
                    references.append(
                        DateReference(
                            code=ycode + month_suffix(extractor.month_format, mstart.month),
                            language=language,
                            description=f"{t(f'months.{mstart.month}', locale)} {mstart.year}",
                            hierarchy=parent,
                            date_type=_period_type(extractor, MONTH, locale),
                            start=mstart,
                            end=period_end(mstart, 1),
                            kind=MONTH,
                            sort_key=(mstart, _RANK[MONTH]),
                        )
                    )
    return references


def parse_specific_day(value: str, date_format: str) -> datetime:
    pattern = SPECIFIC_DAY_FORMATS.get(date_format.lower())
    if pattern is None:
        raise ValueError(f"Unknown date format: {date_format}")
    try:
        return datetime.strptime(value, pattern)
    except ValueError as exc:
        raise ValueError(
            f"Unable to parse {value!r} based on supplied format of {date_format}"
        ) from exc


def generate_specific_days(
    extractor: DateExtractor, values: Iterable[str], locales: list[str]
) -> list[DateReference]:
    references = []
    for value in values:
        day = parse_specific_day(str(value), extractor.date_format or "")
        for locale in locales:
            references.append(
                DateReference(
                    code=str(value),
                    language=language_value(locale),
                    description=day.strftime("%d/%m/%Y"),
                    hierarchy=None,
                    date_type=t("date_format.specific_day", locale),
                    start=day,
                    end=day + timedelta(days=1, seconds=-1),
                    kind=DAY,
                    sort_key=(day, _RANK[DAY]),
                )
            )
    return references


def date_references(
    extractor: DateExtractor, values: list[str], locales: list[str]
) -> list[DateReference]:
    if extractor.date_format:
        logger.debug("Creating specific date table...")
        return generate_specific_days(extractor, values, locales)
    logger.debug("Creating period table for %s years", extractor.type.value)
    first, last = year_range(values)
    return generate_periods(extractor, first, last, locales)


def sort_orders(references: list[DateReference]) -> dict[tuple[str, str], int]:
    """(code, language) -> position of the period in chronological order."""
    ordered = sorted({(r.sort_key, r.code) for r in references})
    positions = {code: index for index, (_, code) in enumerate(ordered, start=1)}
    return {(r.code, r.language): positions[r.code] for r in references}


def coverage(
    references: list[DateReference], present: set[str]
) -> Optional[tuple[datetime, datetime]]:
    """Earliest start and latest end among the periods that occur in the data."""
    matched = [r for r in references if r.code in present]
    if not matched:
        return None
    return min(r.start for r in matched), max(r.end for r in matched)
