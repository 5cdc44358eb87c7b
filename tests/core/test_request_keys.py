import pytest

from libs.core.errors import ValidationError
from libs.core.request_keys import (
    COURSE_FIELDS,
    ROADMAP_FIELDS,
    ROLE_ANALYSIS_FIELDS,
    normalize_key,
    normalize_value,
)


def test_normalize_value_collapses_case_and_whitespace():
    assert normalize_value("  Data   Engineer ") == "data engineer"


def test_equivalent_requests_share_a_key():
    first = normalize_key("role_analysis", {"role": "Data Engineer", "level": "Senior"}, ROLE_ANALYSIS_FIELDS)
    second = normalize_key(
        "role_analysis", {"role": " data  engineer", "level": "expert"}, ROLE_ANALYSIS_FIELDS
    )
    assert first == second


def test_key_lists_every_field_in_order():
    key = normalize_key("role_analysis", {"role": "Backend Developer"}, ROLE_ANALYSIS_FIELDS)
    assert key == "kind=role_analysis|role=backend developer|level=<none>|region=<none>|schema=v1"


def test_distinct_parameters_produce_distinct_keys():
    base = {"role": "Data Engineer"}
    keys = {
        normalize_key("role_analysis", base, ROLE_ANALYSIS_FIELDS),
        normalize_key("role_analysis", {**base, "level": "beginner"}, ROLE_ANALYSIS_FIELDS),
        normalize_key("role_analysis", {**base, "region": "usa"}, ROLE_ANALYSIS_FIELDS),
        normalize_key("roadmap", base, ROADMAP_FIELDS),
        normalize_key("role_analysis", base, ROLE_ANALYSIS_FIELDS, schema_version="v2"),
    }
    assert len(keys) == 5


def test_missing_optional_field_differs_from_literal_placeholder():
    missing = normalize_key("role_analysis", {"role": "qa"}, ROLE_ANALYSIS_FIELDS)
    literal = normalize_key("role_analysis", {"role": "qa", "level": "<none>"}, ROLE_ANALYSIS_FIELDS)
    assert missing != literal


def test_separator_characters_cannot_forge_segments():
    forged = normalize_key("role_analysis", {"role": "qa|level=advanced"}, ROLE_ANALYSIS_FIELDS)
    honest = normalize_key("role_analysis", {"role": "qa", "level": "advanced"}, ROLE_ANALYSIS_FIELDS)
    assert forged != honest
    assert forged.count("|") == honest.count("|")


def test_multi_valued_fields_ignore_order_and_duplicates():
    first = normalize_key(
        "roadmap", {"role": "sre", "qualifiers": ["Kubernetes", "aws", "AWS"]}, ROADMAP_FIELDS
    )
    second = normalize_key("roadmap", {"role": "sre", "qualifiers": ["aws", "kubernetes"]}, ROADMAP_FIELDS)
    assert first == second
    assert "qualifiers=aws,kubernetes" in first


def test_required_field_is_enforced():
    with pytest.raises(ValidationError) as excinfo:
        normalize_key("course", {"topic": "   "}, COURSE_FIELDS)
    assert excinfo.value.status_code == 400
    assert "topic" in excinfo.value.detail
