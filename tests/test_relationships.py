from __future__ import annotations

import pytest

from dynamic_data_agent.core.errors import ValidationError
from dynamic_data_agent.query import relationships
from dynamic_data_agent.query.filters import Condition


def test_entities_by_type_matches_the_name_exactly(run, scope):
    result = run(relationships.get_entities_by_type(scope, "product"))
    assert result["success"] is True
    assert result["entity_type"] == "Product"
    assert result["entity_type_ids"] == [1]
    assert [row["id"] for row in result["data"]] == [101, 102]
    assert {row["entity_type_name"] for row in result["data"]} == {"Product"}
    assert result["count"] == 2


def test_lookup_names_are_trimmed_before_matching(run, scope, store):
    result = run(relationships.get_entities_by_type(scope, " Product "))
    assert result["success"] is True
    assert [row["id"] for row in result["data"]] == [101, 102]
    assert store.queries[0].predicate.conditions[1] == Condition("name", "ilike", "%Product%")


def test_blank_lookup_names_resolve_to_nothing(run, scope, store):
    result = run(relationships.get_assessments_by_filter(scope, period_name="   "))
    assert result["success"] is False
    assert store.queries == []


def test_unknown_entity_type_is_not_found_without_raising(run, scope):
    result = run(relationships.get_entities_by_type(scope, "Spaceship"))
    assert result == {"success": False, "error": 'Entity type "Spaceship" not found', "count": 0, "data": []}


def test_lookups_never_see_another_owners_names(run, other_scope):
    result = run(relationships.get_entities_by_type(other_scope, "Vendor"))
    assert result["success"] is False
    assert result["count"] == 0


def test_risks_by_category_resolves_then_filters_with_in(run, scope, store):
    result = run(relationships.get_risks_by_category(scope, "Operational"))

    assert [row["name"] for row in result["data"]] == ["Outage", "Staffing"]
    assert all(row["category_name"] == "Operational" for row in result["data"])
    assert result["risk_category_ids"] == [5]

    lookup, dependent = store.queries
    assert lookup.table == "risk_categories"
    assert dependent.table == "risks"
    assert dependent.predicate.conditions == (
        Condition("user_id", "eq", "user-1"),
        Condition("risk_category_id", "in", (5,)),
    )
    assert dependent.limit == 100


def test_required_names_are_validated(run, scope, store):
    with pytest.raises(ValidationError):
        run(relationships.get_entities_by_type(scope, ""))
    with pytest.raises(ValidationError):
        run(relationships.get_risks_by_category(scope, None))
    assert store.queries == []


def test_assessments_by_type_and_period(run, scope):
    result = run(relationships.get_assessments_by_filter(scope, type_filter="Risk", period_name="2020"))
    assert [row["id"] for row in result["data"]] == [1]
    assert result["data"][0]["period_name"] == "2020"
    assert result["filters_applied"] == {"type": "Risk", "period": "2020", "period_ids": [17]}


def test_assessment_period_matches_partially(run, scope):
    result = run(relationships.get_assessments_by_filter(scope, period_name="20"))
    assert result["filters_applied"]["period_ids"] == [17, 18]
    assert {row["period_name"] for row in result["data"]} == {"2020", "Q1 2021"}


def test_assessments_without_filters_return_all_owned_rows(run, scope):
    result = run(relationships.get_assessments_by_filter(scope))
    assert [row["id"] for row in result["data"]] == [1, 2, 4]
    assert result["filters_applied"] == {"type": "all", "period": "all", "period_ids": []}


def test_unknown_period_is_not_found(run, scope):
    result = run(relationships.get_assessments_by_filter(scope, period_name="1999"))
    assert result["success"] is False
    assert result["error"] == 'Assessment period "1999" not found'


def test_entities_with_risks_nests_the_junction(run, scope):
    result = run(relationships.get_entities_with_risks(scope))

    by_id = {row["id"]: row for row in result["data"]}
    assert result["count"] == 4
    assert result["total_risks"] == 3
    assert by_id[101]["risk_count"] == 2
    assert [link["risk"]["name"] for link in by_id[101]["associated_risks"]] == ["Outage", "Fraud"]
    assert by_id[101]["associated_risks"][1]["entity_risk_status"] == "Closed"
    assert by_id[101]["associated_risks"][0]["entity_risk_id"] == 1001
    assert by_id[102]["associated_risks"] == []


def test_entities_with_risks_filtered_by_type(run, scope):
    result = run(relationships.get_entities_with_risks(scope, entity_type_name="Vendor"))
    assert [row["id"] for row in result["data"]] == [103]
    assert result["data"][0]["associated_risks"][0]["risk"]["name"] == "Staffing"
    assert result["entity_type_filter"] == "Vendor"


def test_entities_with_risks_unknown_type_is_not_found(run, scope):
    result = run(relationships.get_entities_with_risks(scope, entity_type_name="Spaceship"))
    assert result["success"] is False
    assert result["data"] == []
