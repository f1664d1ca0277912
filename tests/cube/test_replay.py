# tests/cube/test_replay.py
import pytest

from statcube.core.exceptions import FactTableValidationException, FactTableValidationType
from statcube.cube.replay import FactTableReplay, apply_action
from statcube.schemas.dataset import DataTable, DataTableAction, DataTableDescription


def make_replay(fact, action, descriptions=None):
    data_table = DataTable(id="dt_1", action=action, descriptions=descriptions or [])
    return data_table, FactTableReplay(
        schema="build_1",
        fact=fact,
        data_table=data_table,
        staging_name="staging_test",
    )


def test_replace_all_deletes_then_loads(fact):
    data_table, replay = make_replay(fact, DataTableAction.REPLACE_ALL)
    statements = apply_action("build_1", fact, data_table, replay)

    assert len(statements) == 2
    assert statements[0] == 'DELETE FROM "build_1"."fact_table"'
    assert statements[1].startswith('INSERT INTO "build_1"."fact_table"')
    assert '"data_tables"."dt_1"' in statements[1]


def test_add_strips_transient_flags_before_loading(fact):
    data_table, replay = make_replay(fact, DataTableAction.ADD)
    statements = apply_action("build_1", fact, data_table, replay)

    assert len(statements) == 4
    for code, statement in zip("pfr", statements[:3]):
        assert statement.startswith('UPDATE "build_1"."fact_table" SET "notes"')
        assert f"'{code}'" in statement
        assert "array_remove" in statement
    assert statements[3].startswith('INSERT INTO "build_1"."fact_table"')


def test_revise_stages_merges_and_drops(fact):
    data_table, replay = make_replay(fact, DataTableAction.REVISE)
    statements = apply_action("build_1", fact, data_table, replay)

    assert statements[0].startswith('CREATE TEMPORARY TABLE "staging_test"')
    assert statements[-1] == 'DROP TABLE IF EXISTS "staging_test"'
    assert not any(s.startswith("INSERT INTO") for s in statements)
    assert any(s.startswith('DELETE FROM "staging_test" USING') for s in statements)
    flagged = [s for s in statements if "IS DISTINCT FROM" in s]
    assert len(flagged) == 1
    assert "array_append" in flagged[0]


def test_revise_finalises_provisional_values_before_stripping_flags(fact):
    data_table, replay = make_replay(fact, DataTableAction.REVISE)
    statements = apply_action("build_1", fact, data_table, replay)

    finalise = statements[1]
    assert finalise.startswith('UPDATE "build_1"."fact_table" SET "value"')
    assert "arrayoverlap" in finalise
    assert all("array_remove" in s for s in statements[2:5])


def test_add_revise_appends_unmatched_rows_before_drop(fact):
    data_table, replay = make_replay(fact, DataTableAction.ADD_REVISE)
    statements = apply_action("build_1", fact, data_table, replay)

    revise = apply_action(
        "build_1", fact, data_table.model_copy(update={"action": DataTableAction.REVISE}), replay
    )
    assert len(statements) == len(revise) + 1
    assert statements[-2].startswith('INSERT INTO "build_1"."fact_table"')
    assert "NOT EXISTS" in statements[-2]
    assert statements[-1] == 'DROP TABLE IF EXISTS "staging_test"'


def test_correction_only_updates_matching_rows(fact):
    data_table, replay = make_replay(fact, DataTableAction.CORRECTION)
    statements = apply_action("build_1", fact, data_table, replay)

    assert len(statements) == 3
    assert statements[1].startswith('UPDATE "build_1"."fact_table" SET')
    assert 'FROM "staging_test"' in statements[1]


def test_key_match_casts_both_sides(fact):
    _, replay = make_replay(fact, DataTableAction.CORRECTION)
    rendered = replay.key_match().sql(dialect="postgres")
    for column in fact.composite_key:
        assert f'CAST("fact_table"."{column}" AS VARCHAR)' in rendered
        assert f'CAST("staging_test"."{column}" AS VARCHAR)' in rendered


def test_described_columns_are_read_from_the_upload(fact):
    descriptions = [
        DataTableDescription(column_name=f"Upload {name}", fact_table_column=name)
        for name in fact.column_names
    ]
    data_table, replay = make_replay(fact, DataTableAction.ADD, descriptions)
    insert = apply_action("build_1", fact, data_table, replay)[-1]

    assert '"Upload area"' in insert
    assert '("area", "year", "measure", "value", "notes")' in insert


@pytest.mark.parametrize(
    "action",
    [
        DataTableAction.ADD,
        DataTableAction.REVISE,
        DataTableAction.ADD_REVISE,
        DataTableAction.CORRECTION,
    ],
)
def test_unmapped_key_columns_are_rejected(fact, action):
    descriptions = [DataTableDescription(column_name="Area", fact_table_column="area")]
    data_table, replay = make_replay(fact, action, descriptions)

    with pytest.raises(FactTableValidationException) as err:
        apply_action("build_1", fact, data_table, replay)

    assert err.value.type == FactTableValidationType.UNMATCHED_COLUMNS
    assert err.value.columns == ["year", "measure"]


def test_replace_all_ignores_key_mapping(fact):
    descriptions = [DataTableDescription(column_name="Area", fact_table_column="area")]
    data_table, replay = make_replay(fact, DataTableAction.REPLACE_ALL, descriptions)

    assert len(apply_action("build_1", fact, data_table, replay)) == 2


def test_staging_names_are_unique(fact):
    data_table = DataTable(id="dt_1")
    first = FactTableReplay.for_data_table("build_1", fact, data_table)
    second = FactTableReplay.for_data_table("build_1", fact, data_table)

    assert first.staging_name != second.staging_name
    assert first.staging_name.startswith("staging_")
