"""
Boolean cohort providers usable as sub-cohorts of a composition.

Parameter values reach a provider either from the caller (already typed)
or as literal strings from a mapping, so dates and locations are parsed
leniently here: ``"2020-01-31"`` and ``datetime(2020, 1, 31)`` are the same
date, ``"1,2"`` and ``[1, 2]`` the same location list.
"""

import dataclasses
import enum
import logging
import typing

from stairval.notepad import Notepad

from . import calculations
from .calculator import PatientCalculator
from .composition import CohortProvider, Mapped, compose
from .context import CalculationContext
from .errors import ConfigurationError
from .model import Observation, PatientId
from .store import ObservationStore
from .temporal import as_datetime, within

logger = logging.getLogger(__name__)


def _date(params: typing.Mapping[str, typing.Any], name: str):
    value = params.get(name)
    try:
        return as_datetime(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Parameter {name!r} is not a date: {value!r}") from e


def _locations(value: typing.Any) -> typing.Optional[set[int]]:
    """None, or an empty value, means every location."""
    if value is None:
        return None
    if isinstance(value, str):
        parts = [p.strip() for p in value.split(",") if p.strip()]
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = list(value)
    else:
        parts = [value]
    if not parts:
        return None
    try:
        return {int(p) for p in parts}
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid location list {value!r}") from e


def _at(locations: typing.Optional[set[int]], location: typing.Optional[int]) -> bool:
    return locations is None or location in locations


def _single_location(value: typing.Any) -> typing.Optional[int]:
    locations = _locations(value)
    if locations is None:
        return None
    if len(locations) > 1:
        raise ConfigurationError(f"A calculation runs at one location, got {value!r}")
    return next(iter(locations))


class CalculationCohort(CohortProvider):
    """
    Patients for whom a calculator's fact is truthy (True, a date, a
    non-empty list). The bound parameters are handed to the calculator; a
    bound ``location`` also replaces the location of the context, since
    calculators restrict their queries to ``context.location``.
    """

    def __init__(
            self,
            calculator: PatientCalculator,
            parameters: typing.Sequence[str] = (),
            notepad: typing.Optional[Notepad] = None,
    ):
        self._calculator = calculator
        self.parameters = tuple(parameters)
        self._notepad = notepad

    def evaluate(self, params, context, universe) -> set[PatientId]:
        if "location" in params:
            context = dataclasses.replace(context, location=_single_location(params["location"]))
        result = self._calculator.evaluate(universe, params, context, self._notepad)
        return calculations.patients_that_pass(result)


class StaticCohort(CohortProvider):
    """A fixed set of patients, e.g. the result of a stored query."""

    def __init__(self, patient_ids: typing.Iterable[PatientId]):
        self._patient_ids = frozenset(int(p) for p in patient_ids)

    def evaluate(self, params, context, universe) -> set[PatientId]:
        return set(self._patient_ids & universe)


class TimeModifier(str, enum.Enum):
    FIRST = "FIRST"
    LAST = "LAST"
    ANY = "ANY"


class CodedObsCohort(CohortProvider):
    """
    Patients with an observation of ``concept`` answered with one of
    ``answers``, considering only observations in the ``onOrAfter`` ..
    ``onOrBefore`` window at ``locationList``.

    FIRST and LAST look only at the first or last matching-concept
    observation in the window; ANY accepts any of them.
    """

    parameters = ("onOrAfter", "onOrBefore", "locationList")

    def __init__(
            self,
            store: ObservationStore,
            concept: int,
            answers: typing.Collection[int],
            time_modifier: TimeModifier = TimeModifier.ANY,
            encounter_types: typing.Optional[typing.Collection[int]] = None,
    ):
        self._store = store
        self._concept = concept
        self._answers = frozenset(answers)
        self._time_modifier = TimeModifier(time_modifier)
        self._encounter_types = encounter_types

    def evaluate(self, params, context, universe) -> set[PatientId]:
        locations = _locations(params.get("locationList"))
        found = calculations.all_observations(
            self._store, self._concept, universe, context,
            encounter_types=self._encounter_types,
            on_or_after=_date(params, "onOrAfter"),
            on_or_before=_date(params, "onOrBefore"),
        )
        members: set[PatientId] = set()
        for patient_id, observations in found.items():
            observations = [obs for obs in observations if _at(locations, obs.location)]
            if self._matches(observations):
                members.add(patient_id)
        return members

    def _matches(self, observations: list[Observation]) -> bool:
        if not observations:
            return False
        if self._time_modifier == TimeModifier.FIRST:
            observations = observations[:1]
        elif self._time_modifier == TimeModifier.LAST:
            observations = observations[-1:]
        return any(obs.value_coded in self._answers for obs in observations)


class DateObsCohort(CohortProvider):
    """
    Patients with a date-valued observation of ``concept`` whose value lies
    between ``value1`` and ``value2`` (inclusive; a missing bound is open).
    """

    parameters = ("value1", "value2", "locationList")

    def __init__(
            self,
            store: ObservationStore,
            concept: int,
            encounter_types: typing.Optional[typing.Collection[int]] = None,
    ):
        self._store = store
        self._concept = concept
        self._encounter_types = encounter_types

    def evaluate(self, params, context, universe) -> set[PatientId]:
        locations = _locations(params.get("locationList"))
        lower = _date(params, "value1")
        upper = _date(params, "value2")
        found = calculations.all_observations(
            self._store, self._concept, universe, context, encounter_types=self._encounter_types)
        return {
            patient_id
            for patient_id, observations in found.items()
            if any(
                obs.value_datetime is not None
                and _at(locations, obs.location)
                and within(obs.value_datetime, lower, upper)
                for obs in observations
            )
        }


class AliveCohort(CohortProvider):
    """Patients not recorded as dead on or before the reference date, the usual report base cohort."""

    def __init__(self, store: ObservationStore):
        self._store = store

    def evaluate(self, params, context, universe) -> set[PatientId]:
        return calculations.living(self._store, universe, context)


class GenderCohort(CohortProvider):
    def __init__(self, store: ObservationStore, gender: str = "F"):
        if not gender or gender.strip()[0].upper() not in ("F", "M"):
            raise ConfigurationError(f"Unknown gender {gender!r}")
        self._store = store
        self._gender = gender.strip()[0].upper()

    def evaluate(self, params, context, universe) -> set[PatientId]:
        return {patient_id for patient_id, gender in self._store.genders(universe).items()
                if gender == self._gender}


class ProgramEnrollmentCohort(CohortProvider):
    """
    Patients enrolled in ``program`` at ``location`` with an enrollment date
    between ``startDate`` and ``endDate``.
    """

    parameters = ("startDate", "endDate", "location")

    def __init__(self, store: ObservationStore, program: int):
        self._store = store
        self._program = program

    def evaluate(self, params, context, universe) -> set[PatientId]:
        locations = _locations(params.get("location"))
        start = _date(params, "startDate")
        end = _date(params, "endDate")
        found = calculations.all_enrollments(self._store, self._program, universe)
        return {
            patient_id
            for patient_id, enrollments in found.items()
            if any(
                e.date_enrolled is not None and _at(locations, e.location) and within(e.date_enrolled, start, end)
                for e in enrollments
            )
        }


class CompositionCohort(CohortProvider):
    """
    A composition used as a sub-cohort of another composition. It declares
    its own parameters, which its registrations map from.
    """

    def __init__(
            self,
            expression: str,
            registrations: typing.Mapping[str, Mapped],
            parameters: typing.Sequence[str] = (),
    ):
        self.expression = expression
        self.registrations = dict(registrations)
        self.parameters = tuple(parameters)

    def evaluate(self, params, context: CalculationContext, universe) -> set[PatientId]:
        logger.debug("Evaluating nested composition %r", self.expression)
        return compose(self.expression, self.registrations, params, context, universe)
