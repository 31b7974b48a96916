"""
Common per-cohort sub-operations used by the calculators.

Every function takes the store explicitly, returns one entry per patient of
the cohort, and uses ``context.now`` as the default upper date bound.
"""

import typing

from .context import CalculationContext
from .model import Encounter, Enrollment, FactResult, Observation, PatientId
from .store import Cohort, ObservationStore
from .temporal import as_datetime


def all_observations(
        store: ObservationStore,
        concept: int,
        cohort: Cohort,
        context: CalculationContext,
        answers: typing.Optional[typing.Collection[int]] = None,
        encounter_types: typing.Optional[typing.Collection[int]] = None,
        location: typing.Optional[int] = None,
        on_or_after=None,
        on_or_before=None,
) -> dict[PatientId, list[Observation]]:
    """Chronological matches per patient; patients without matches get an empty list."""
    cohort = list(cohort)
    found = store.observations(
        cohort,
        concept,
        encounter_types=encounter_types,
        location=location,
        answers=answers,
        on_or_after=on_or_after,
        on_or_before=context.now if on_or_before is None else on_or_before,
    )
    return {patient_id: list(found.get(patient_id, [])) for patient_id in cohort}


def first_observation(
        store: ObservationStore,
        concept: int,
        cohort: Cohort,
        context: CalculationContext,
        answers: typing.Optional[typing.Collection[int]] = None,
        encounter_types: typing.Optional[typing.Collection[int]] = None,
        location: typing.Optional[int] = None,
        on_or_after=None,
        on_or_before=None,
) -> dict[PatientId, typing.Optional[Observation]]:
    matches = all_observations(store, concept, cohort, context, answers=answers, encounter_types=encounter_types,
                               location=location, on_or_after=on_or_after, on_or_before=on_or_before)
    return {patient_id: (obs[0] if obs else None) for patient_id, obs in matches.items()}


def last_observation(
        store: ObservationStore,
        concept: int,
        cohort: Cohort,
        context: CalculationContext,
        encounter_types: typing.Optional[typing.Collection[int]] = None,
        location: typing.Optional[int] = None,
        on_or_after=None,
        on_or_before=None,
) -> dict[PatientId, typing.Optional[Observation]]:
    matches = all_observations(store, concept, cohort, context, encounter_types=encounter_types,
                               location=location, on_or_after=on_or_after, on_or_before=on_or_before)
    return {patient_id: (obs[-1] if obs else None) for patient_id, obs in matches.items()}


def first_encounter(
        store: ObservationStore,
        encounter_type: typing.Optional[int],
        cohort: Cohort,
        context: CalculationContext,
        location: typing.Optional[int] = None,
) -> dict[PatientId, typing.Optional[Encounter]]:
    """Earliest encounter of the type (any type when None) on or before now."""
    cohort = list(cohort)
    found = store.encounters(
        cohort,
        encounter_types=None if encounter_type is None else [encounter_type],
        location=location,
        on_or_before=context.now,
    )
    return {patient_id: (found.get(patient_id) or [None])[0] for patient_id in cohort}


def all_enrollments(
        store: ObservationStore,
        program: int,
        cohort: Cohort,
        location: typing.Optional[int] = None,
) -> dict[PatientId, list[Enrollment]]:
    cohort = list(cohort)
    found = store.enrollments(cohort, program, location=location)
    return {patient_id: list(found.get(patient_id, [])) for patient_id in cohort}


def first_enrollment(
        store: ObservationStore,
        program: int,
        cohort: Cohort,
        context: CalculationContext,
        location: typing.Optional[int] = None,
) -> dict[PatientId, typing.Optional[Enrollment]]:
    """Earliest enrollment in the program that started on or before now."""
    result: dict[PatientId, typing.Optional[Enrollment]] = {}
    for patient_id, enrollments in all_enrollments(store, program, cohort, location).items():
        started = [e for e in enrollments if e.date_enrolled is not None and e.date_enrolled <= context.now]
        result[patient_id] = started[0] if started else None
    return result


def last_active_enrollment(
        store: ObservationStore,
        program: int,
        cohort: Cohort,
        context: CalculationContext,
        on_date=None,
        location: typing.Optional[int] = None,
) -> dict[PatientId, typing.Optional[Enrollment]]:
    """Latest enrollment in the program active on ``on_date`` (default: now)."""
    moment = context.now if on_date is None else as_datetime(on_date)
    result: dict[PatientId, typing.Optional[Enrollment]] = {}
    for patient_id, enrollments in all_enrollments(store, program, cohort, location).items():
        active = [e for e in enrollments if e.is_active_on(moment)]
        result[patient_id] = active[-1] if active else None
    return result


def alive(store: ObservationStore, cohort: Cohort, context: CalculationContext) -> FactResult:
    """A patient is alive unless marked dead with a death date on or before now."""
    result: FactResult = {}
    for patient_id, status in store.vital_statuses(cohort).items():
        result[patient_id] = not status.dead or (
            status.death_date is not None and status.death_date > context.now)
    return result


def living(store: ObservationStore, cohort: Cohort, context: CalculationContext) -> set[PatientId]:
    return patients_that_pass(alive(store, cohort, context))


def female(store: ObservationStore, cohort: Cohort) -> set[PatientId]:
    return {patient_id for patient_id, gender in store.genders(cohort).items() if gender == "F"}


def patients_that_pass(result: FactResult) -> set[PatientId]:
    """Patients whose fact is truthy (True, a date, a non-empty list)."""
    return {patient_id for patient_id, value in result.items() if value}


def ensure_entries(result: typing.Mapping[PatientId, typing.Any], cohort: Cohort, default=None) -> FactResult:
    """Fill in ``default`` for every cohort patient missing from ``result``."""
    return {patient_id: result.get(patient_id, default) for patient_id in cohort}
