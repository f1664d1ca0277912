# statcube/cube/context.py
"""
Per-build accumulator shared by the cube engines.

The orchestrator owns one BuildContext per build; each engine appends its
SELECT fragments, joins, ORDER BY terms and named-view columns to it, and the
view engine assembles the final views from it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlglot import exp

from statcube.core.i18n import language_value, t
from statcube.cube import sql
from statcube.schemas.cube import CubeBuildType, CubeViewConfig
from statcube.schemas.dataset import FactTableColumn

_UNSAFE = re.compile(r"[^a-zA-Z_]")


def make_cube_safe_string(value: str) -> str:
    return _UNSAFE.sub("", value.lower().replace(" ", "_"))


def lookup_table_name(fact_table_column: str) -> str:
    return f"{make_cube_safe_string(fact_table_column)}_lookup"


def update_column_name(existing: set[str], proposed: str) -> str:
    """Return `proposed`, or `proposed_1`, `proposed_2`, ... if already taken."""
    name = proposed
    count = 1
    while name in existing:
        name = f"{proposed}_{count}"
        count += 1
    return name


# ---------------------------------------------------------------------------
# Fact table description
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FactTableInfo:
    columns: tuple[FactTableColumn, ...]
    composite_key: tuple[str, ...]
    data_values_column: Optional[FactTableColumn] = None
    notes_column: Optional[FactTableColumn] = None
    measure_column: Optional[FactTableColumn] = None

    @property
    def column_names(self) -> list[str]:
        return [c.column_name for c in self.columns]

    @property
    def key_columns(self) -> list[FactTableColumn]:
        return [c for c in self.columns if c.column_name in self.composite_key]


# ---------------------------------------------------------------------------
# Accumulators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VariantNames:
    """The four logical columns every dimension and the measure contribute."""

    value: str
    reference: str
    sort: str
    hierarchy: str

    @property
    def indexable(self) -> list[str]:
        return [self.reference, self.sort, self.hierarchy]


@dataclass
class NamedViewColumns:
    config: CubeViewConfig
    # (source column in the core view, output name)
    projection: list[tuple[str, str]] = field(default_factory=list)

    def add(self, source: str, name: Optional[str] = None) -> None:
        entry = (source, name or source)
        if entry not in self.projection:
            self.projection.append(entry)

    @property
    def column_names(self) -> list[str]:
        return [name for _, name in self.projection]


@dataclass
class LocaleBuild:
    locale: str
    select: list[exp.Expression] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    used_names: set[str] = field(default_factory=set)
    index_columns: list[str] = field(default_factory=list)
    views: dict[str, NamedViewColumns] = field(default_factory=dict)

    @property
    def language(self) -> str:
        return language_value(self.locale)


@dataclass
class JoinPart:
    """LEFT JOIN <schema>.<table> ON <on> [AND <table>.language = <locale>]"""

    table_name: str
    on: exp.Expression
    language_column: Optional[exp.Column] = None


@dataclass
class BuildContext:
    dataset_id: str
    revision_id: str
    build_id: str
    locales: list[str]
    view_configs: list[CubeViewConfig] = field(default_factory=list)
    build_type: CubeBuildType = CubeBuildType.FULL
    fact: Optional[FactTableInfo] = None
    per_locale: dict[str, LocaleBuild] = field(default_factory=dict)
    joins: list[JoinPart] = field(default_factory=list)
    order_by: list[exp.Ordered] = field(default_factory=list)
    lookup_tables: list[str] = field(default_factory=list)
    coverage_start: Optional[datetime] = None
    coverage_end: Optional[datetime] = None

    def __post_init__(self) -> None:
        for locale in self.locales:
            if locale not in self.per_locale:
                self.per_locale[locale] = LocaleBuild(
                    locale=locale,
                    views={
                        cfg.name: NamedViewColumns(config=cfg) for cfg in self.view_configs
                    },
                )

    # The build writes into the build schema; views persisted for later
    # promotion must point at the schema the build is renamed to.
    @property
    def schema(self) -> str:
        return self.build_id

    @property
    def revision_schema(self) -> str:
        return self.revision_id

    def locale_build(self, locale: str) -> LocaleBuild:
        return self.per_locale[locale]

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def claim_name(self, locale: str, proposed: str) -> str:
        build = self.per_locale[locale]
        name = update_column_name(build.used_names, proposed)
        build.used_names.add(name)
        return name

    def claim_variant_names(self, locale: str, proposed: str) -> VariantNames:
        value = self.claim_name(locale, proposed)
        return VariantNames(
            value=value,
            reference=self.claim_name(
                locale, f"{value}_{t('column_headers.reference', locale)}"
            ),
            sort=self.claim_name(locale, f"{value}_{t('column_headers.sort', locale)}"),
            hierarchy=self.claim_name(
                locale, f"{value}_{t('column_headers.hierarchy', locale)}"
            ),
        )

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def add_column(self, locale: str, expression: exp.Expression, name: str) -> None:
        build = self.per_locale[locale]
        build.select.append(sql.alias(expression, name))
        build.columns.append(name)
        build.used_names.add(name)

    def add_variants(
        self,
        locale: str,
        names: VariantNames,
        value: exp.Expression,
        reference: exp.Expression,
        sort: exp.Expression,
        hierarchy: exp.Expression,
    ) -> None:
        self.add_column(locale, value, names.value)
        self.add_column(locale, reference, names.reference)
        self.add_column(locale, sort, names.sort)
        self.add_column(locale, hierarchy, names.hierarchy)
        self.per_locale[locale].index_columns.extend(names.indexable)

    def add_variants_to_views(
        self, locale: str, names: VariantNames, *, is_date: bool = False
    ) -> None:
        for view in self.per_locale[locale].views.values():
            cfg = view.config
            if not is_date or cfg.dates == "formatted":
                view.add(names.value)
            elif cfg.dates == "raw":
                view.add(names.reference, names.value)
            if cfg.refcodes:
                view.add(names.reference)
            if cfg.sort_orders:
                view.add(names.sort)
            if cfg.hierarchies:
                view.add(names.hierarchy)

    def add_join(
        self, table_name: str, on: exp.Expression, language_column: Optional[exp.Column]
    ) -> None:
        self.joins.append(JoinPart(table_name, on, language_column))

    def add_order_by(self, expression: exp.Expression, desc: bool = False) -> None:
        self.order_by.append(sql.ordered(expression, desc))

    def extend_coverage(self, start: datetime, end: datetime) -> None:
        if self.coverage_start is None or start < self.coverage_start:
            self.coverage_start = start
        if self.coverage_end is None or end > self.coverage_end:
            self.coverage_end = end
