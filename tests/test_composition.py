"""
Cohort composition algebra:
- grammar and precedence
- parameter mapping and validation
- memoized, idempotent evaluation
"""

from datetime import datetime

import pytest

from hivcohort.cohorts import StaticCohort
from hivcohort.composition import (
    CohortComposer,
    CohortProvider,
    LogicalOperator,
    Mapped,
    compose,
    parse_expression,
    parse_mappings,
)
from hivcohort.context import CalculationContext
from hivcohort.errors import ConfigurationError

UNIVERSE = {1, 2, 3, 4}


class CountingCohort(CohortProvider):
    """Static members; records every evaluation and the parameters it received."""

    def __init__(self, members, parameters=()):
        self.members = set(members)
        self.parameters = tuple(parameters)
        self.calls = []

    def evaluate(self, params, context, universe):
        self.calls.append(dict(params))
        return set(self.members)


@pytest.fixture
def context():
    return CalculationContext(now=datetime(2020, 12, 31))


def _static(**cohorts):
    return {name: Mapped.straight_through(StaticCohort(members)) for name, members in cohorts.items()}


def test_and_not_or(context):
    registrations = _static(A={1, 2, 3}, B={2}, C={3})
    assert compose("A AND NOT (B OR C)", registrations, {}, context, UNIVERSE) == {1}


def test_precedence_not_and_or(context):
    registrations = _static(A={1}, B={2, 3}, C={3, 4})
    assert compose("A OR B AND C", registrations, {}, context, UNIVERSE) == {1, 3}
    assert compose("(A OR B) AND C", registrations, {}, context, UNIVERSE) == {3}
    assert compose("NOT A AND B", registrations, {}, context, UNIVERSE) == {2, 3}
    assert compose("NOT (A OR B)", registrations, {}, context, UNIVERSE) == {4}


def test_binary_not_means_and_not(context):
    registrations = _static(startedART={1, 2, 3}, transferredIn={2}, restartedTreatment={3})
    expression = "startedART NOT (transferredIn OR restartedTreatment)"
    assert compose(expression, registrations, {}, context, UNIVERSE) == {1}


def test_keywords_are_case_insensitive(context):
    registrations = _static(A={1, 2}, B={2})
    assert compose("a and not B", {"a": registrations["A"], "B": registrations["B"]}, {}, context, UNIVERSE) == {1}


def test_names_with_dots_and_dashes():
    tree = parse_expression("tx-new.adults OR tx_curr")
    assert tree.operator == LogicalOperator.OR
    assert tree.names() == {"tx-new.adults", "tx_curr"}


@pytest.mark.parametrize("expression", ["", "A AND", "(A OR B", "A B", "A OR )", "NOT", "A & B"])
def test_malformed_expressions(expression):
    with pytest.raises(ConfigurationError):
        parse_expression(expression)


def test_unregistered_name_fails_before_any_evaluation(context):
    counting = CountingCohort({1})
    with pytest.raises(ConfigurationError):
        compose("A AND MISSING", {"A": Mapped.straight_through(counting)}, {}, context, UNIVERSE)
    assert counting.calls == []


def test_parameters_are_renamed_through_mappings(context):
    counting = CountingCohort({1}, parameters=("value1", "value2", "locationList"))
    registrations = {
        "A": Mapped.map(counting, "value1=${onOrAfter},value2=${onOrBefore},locationList=${location}"),
    }
    params = {"onOrAfter": "2020-01-01", "onOrBefore": "2020-12-31", "location": 5}

    assert compose("A", registrations, params, context, UNIVERSE) == {1}
    assert counting.calls == [{"value1": "2020-01-01", "value2": "2020-12-31", "locationList": 5}]


def test_literal_mapping_values(context):
    counting = CountingCohort({1}, parameters=("value1",))
    compose("A", {"A": Mapped.map(counting, {"value1": "2019-01-01"})}, {}, context, UNIVERSE)
    assert counting.calls == [{"value1": "2019-01-01"}]


def test_unmapped_parameter_is_a_configuration_error(context):
    counting = CountingCohort({1}, parameters=("value1", "value2"))
    with pytest.raises(ConfigurationError):
        compose("A", {"A": Mapped.map(counting, "value1=${onOrAfter}")}, {"onOrAfter": "2020-01-01"},
                context, UNIVERSE)
    assert counting.calls == []


def test_unsupplied_parameter_is_a_configuration_error(context):
    counting = CountingCohort({1}, parameters=("onOrAfter",))
    with pytest.raises(ConfigurationError):
        compose("A", {"A": Mapped.straight_through(counting)}, {}, context, UNIVERSE)


def test_each_cohort_is_evaluated_once(context):
    a = CountingCohort({1, 2})
    b = CountingCohort({2})
    registrations = {"A": Mapped.straight_through(a), "B": Mapped.straight_through(b)}

    assert compose("A OR (A AND B) OR NOT A", registrations, {}, context, UNIVERSE) == UNIVERSE
    assert len(a.calls) == 1
    assert len(b.calls) == 1


def test_results_are_limited_to_the_universe(context):
    registrations = _static(A={1, 99})
    assert compose("A", registrations, {}, context, UNIVERSE) == {1}


def test_compose_is_idempotent(records, context):
    for patient_id in (1, 2, 3, 4):
        records.patient(patient_id)
    composer = CohortComposer(records.store())
    registrations = _static(A={1, 2, 3}, B={2}, C={3})

    first = composer.compose("A AND NOT (B OR C)", registrations, {}, context)
    second = composer.compose("A AND NOT (B OR C)", registrations, {}, context)
    assert first == second == {1}


def test_composer_universe_is_every_known_patient(records, context):
    records.patient(1).patient(2)
    records.obs(3, 856, datetime(2020, 1, 1))
    composer = CohortComposer(records.store())
    assert composer.compose("NOT A", _static(A={1}), {}, context) == {2, 3}


def test_parse_mappings():
    assert parse_mappings("value1=${onOrAfter}, locationList=${location}") == {
        "value1": "${onOrAfter}",
        "locationList": "${location}",
    }
    assert parse_mappings("") == {}
    with pytest.raises(ConfigurationError):
        parse_mappings("value1")
