# tests/api/test_filters.py
from statcube.api.cube_query.filters import group_filters, transform_hierarchy


def rows():
    return [
        {"reference": "W92", "description": "Wales", "hierarchy": None},
        {"reference": "W06001", "description": "Anglesey", "hierarchy": "W92"},
        {"reference": "W06002", "description": "Gwynedd", "hierarchy": "W92"},
        {"reference": "E92", "description": "England", "hierarchy": None},
        {"reference": "X1", "description": "Orphan", "hierarchy": "missing"},
    ]


def test_transform_hierarchy_nests_children_under_parents():
    tree = transform_hierarchy(rows())

    assert [n.reference for n in tree] == ["W92", "E92", "X1"]
    assert [c.reference for c in tree[0].children] == ["W06001", "W06002"]
    assert tree[1].children == []


def test_self_referencing_rows_stay_roots():
    tree = transform_hierarchy([{"reference": "A", "description": "A", "hierarchy": "A"}])
    assert [n.reference for n in tree] == ["A"]


def test_group_filters_by_fact_table_column():
    flat = [
        {**r, "fact_table_column": "area", "dimension_name": "Area"} for r in rows()
    ] + [
        {
            "reference": "2020",
            "description": "2020",
            "hierarchy": None,
            "fact_table_column": "year",
            "dimension_name": "Year",
        }
    ]
    filters = group_filters(flat)

    assert [(f.fact_table_column, f.dimension_name) for f in filters] == [
        ("area", "Area"),
        ("year", "Year"),
    ]
    assert len(filters[0].values) == 3
