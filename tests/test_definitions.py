"""
Calculator wiring and JSON composition definitions.
"""

import json
from datetime import datetime

import pytest

from hivcohort.composition import compose
from hivcohort.context import CalculationContext
from hivcohort.definitions import build_calculators, build_composition, build_config, load_definition
from hivcohort.errors import ConfigurationError
from hivcohort.routine import RoutineConfig

BREASTFEEDING, YES = 6332, 1065
ADULT_FOLLOWUP = 6

DEFINITION = {
    "name": "breastfeeding women",
    "expression": "(BREASTFEEDING OR LISTED) AND FEMALE",
    "parameters": ["onOrAfter", "onOrBefore", "location"],
    "cohorts": {
        "BREASTFEEDING": {
            "type": "coded_obs",
            "concept": "breastfeeding",
            "answers": ["yes"],
            "time_modifier": "last",
            "encounter_types": ["adult_followup", "pediatric_followup"],
            "mappings": "onOrAfter=${onOrAfter},onOrBefore=${onOrBefore},locationList=${location}",
        },
        "LISTED": {"type": "static", "patients": [3]},
        "FEMALE": {"type": "gender", "gender": "F"},
    },
}


def test_build_calculators_shares_the_art_start_calculator(records, metadata):
    calculators = build_calculators(records.store(), metadata)
    assert set(calculators) == {
        "initial_art_start_date",
        "on_art_for_more_than_x_months",
        "completed_prophylaxis",
        "pregnancy_date",
        "routine_viral_load",
    }
    art_start = calculators["initial_art_start_date"]
    assert calculators["routine_viral_load"]._art_start is art_start
    assert calculators["on_art_for_more_than_x_months"]._art_start is art_start


def test_build_config():
    assert build_config("routine", {"suppression_threshold": 400}) == RoutineConfig(suppression_threshold=400)
    with pytest.raises(ConfigurationError):
        build_config("routine", {"threshold": 400})
    with pytest.raises(ConfigurationError):
        build_config("unknown", {})


def test_unknown_config_section(records, metadata):
    with pytest.raises(ConfigurationError):
        build_calculators(records.store(), metadata, {"routines": {}})


def test_build_composition_from_definition(records, metadata):
    records.patient(1, gender="F").patient(2, gender="M").patient(3, gender="F").patient(4, gender="F")
    for patient_id in (1, 2):
        records.obs(patient_id, BREASTFEEDING, datetime(2020, 5, 1), encounter_type=ADULT_FOLLOWUP, value_coded=YES)
    store = records.store()

    cohort = build_composition(DEFINITION, store, metadata)
    params = {"onOrAfter": "2020-01-01", "onOrBefore": "2020-12-31", "location": 1}
    context = CalculationContext(now=datetime(2020, 12, 31))

    assert cohort.parameters == ("onOrAfter", "onOrBefore", "location")
    assert compose(cohort.expression, cohort.registrations, params, context, store.patient_ids()) == {1, 3}


def test_calculation_cohort_from_definition(records, metadata):
    definition = {
        "expression": "INH",
        "cohorts": {
            "INH": {
                "type": "calculation",
                "calculation": "completed_prophylaxis",
                "parameters": ["beginPeriodStartDate", "beginPeriodEndDate",
                               "completionPeriodStartDate", "completionPeriodEndDate"],
                "mappings": {
                    "beginPeriodStartDate": "${startDate}",
                    "beginPeriodEndDate": "${startDate}",
                    "completionPeriodStartDate": "${startDate}",
                    "completionPeriodEndDate": "${endDate}",
                },
            },
        },
    }
    cohort = build_composition(definition, records.store(), metadata)
    assert cohort.registrations["INH"].provider.parameters[0] == "beginPeriodStartDate"


@pytest.mark.parametrize("cohorts", [
    {"A": {"type": "mystery"}},
    {"A": {"type": "calculation", "calculation": "nope"}},
    {"A": {"type": "coded_obs", "answers": ["yes"]}},
    {"A": {"type": "coded_obs", "concept": "no_such_concept", "answers": ["yes"]}},
    {"A": {"type": "coded_obs", "concept": 6332, "answers": [1065], "time_modifier": "middle"}},
    {"A": "not an object"},
])
def test_invalid_definitions(records, metadata, cohorts):
    with pytest.raises(ConfigurationError):
        build_composition({"expression": "A", "cohorts": cohorts}, records.store(), metadata)


def test_load_definition(tmp_path):
    path = tmp_path / "definition.json"
    path.write_text(json.dumps(DEFINITION), encoding="utf-8")
    assert load_definition(path)["expression"] == DEFINITION["expression"]

    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_definition(path)
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_definition(path)


def test_alive_base_cohort_from_definition(records, metadata):
    records.patient(1, gender="F").patient(2, gender="F", dead=True, death_date=datetime(2020, 3, 1))
    store = records.store()
    definition = {
        "expression": "FEMALE AND ALIVE",
        "cohorts": {"FEMALE": {"type": "gender"}, "ALIVE": {"type": "alive"}},
    }
    cohort = build_composition(definition, store, metadata)
    context = CalculationContext(now=datetime(2020, 12, 31))

    assert compose(cohort.expression, cohort.registrations, {}, context, store.patient_ids()) == {1}
