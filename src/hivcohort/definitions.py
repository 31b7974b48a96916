"""
Cohort definitions.

`build_calculators` wires the calculators with their collaborators. Dependencies
are passed explicitly, so the routine monitoring calculator receives the very
ART start date calculator instance registered under ``initial_art_start_date``.

`build_composition` turns a JSON-style definition into a `CompositionCohort`:

    {
      "expression": "(PREGNANT OR BREASTFEEDING) AND FEMALE AND ALIVE",
      "parameters": ["onOrAfter", "onOrBefore", "location"],
      "config": {"routine": {"suppression_threshold": 1000}},
      "cohorts": {
        "PREGNANT": {"type": "calculation", "calculation": "pregnancy_date"},
        "BREASTFEEDING": {
          "type": "coded_obs", "concept": "breastfeeding", "answers": ["yes"],
          "mappings": "onOrAfter=${onOrAfter},onOrBefore=${onOrBefore},locationList=${location}"
        },
        "FEMALE": {"type": "gender", "gender": "F"},
        "ALIVE": {"type": "alive"}
      }
    }

Concepts, answers, encounter types and programs may be logical names
(resolved through the metadata dictionary) or numeric identifiers. A cohort
without ``mappings`` maps its parameters straight through.
"""

import dataclasses
import json
import logging
import pathlib
import typing

from stairval.notepad import Notepad

from .art import InitialArtStartDateCalculator, OnArtConfig, OnArtForMoreThanXMonthsCalculator
from .calculator import PatientCalculator
from .cohorts import (
    AliveCohort,
    CalculationCohort,
    CodedObsCohort,
    CompositionCohort,
    DateObsCohort,
    GenderCohort,
    ProgramEnrollmentCohort,
    StaticCohort,
    TimeModifier,
)
from .composition import CohortProvider, Mapped
from .errors import ConfigurationError
from .metadata import MetadataDictionary
from .pregnancy import PregnancyConfig, PregnancyDateCalculator
from .prophylaxis import CompletedProphylaxisCalculator, ProphylaxisConfig
from .routine import RoutineConfig, RoutineMonitoringCalculator
from .store import ObservationStore

logger = logging.getLogger(__name__)

CONFIG_SECTIONS = {
    "prophylaxis": ProphylaxisConfig,
    "pregnancy": PregnancyConfig,
    "routine": RoutineConfig,
    "on_art": OnArtConfig,
}

Definition = typing.Mapping[str, typing.Any]


def load_definition(path: typing.Union[str, pathlib.Path]) -> dict:
    try:
        with open(path, encoding="utf-8") as fh:
            definition = json.load(fh)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Definition {str(path)!r} is not valid JSON: {e}") from e
    if not isinstance(definition, dict):
        raise ConfigurationError(f"Definition {str(path)!r} must be a JSON object")
    return definition


def build_config(section: str, values: typing.Optional[typing.Mapping[str, typing.Any]]):
    """Build the threshold dataclass of ``section``, rejecting unknown keys."""
    try:
        config_type = CONFIG_SECTIONS[section]
    except KeyError:
        raise ConfigurationError(f"Unknown config section {section!r}")
    values = dict(values or {})
    known = {f.name for f in dataclasses.fields(config_type)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown {section} settings: {unknown}")
    return config_type(**values)


def build_calculators(
        store: ObservationStore,
        metadata: MetadataDictionary,
        config: typing.Optional[typing.Mapping[str, typing.Mapping[str, typing.Any]]] = None,
) -> dict[str, PatientCalculator]:
    config = dict(config or {})
    unknown = sorted(set(config) - set(CONFIG_SECTIONS))
    if unknown:
        raise ConfigurationError(f"Unknown config sections: {unknown}")

    art_start = InitialArtStartDateCalculator(store, metadata)
    return {
        "initial_art_start_date": art_start,
        "on_art_for_more_than_x_months": OnArtForMoreThanXMonthsCalculator(
            store, metadata, art_start, build_config("on_art", config.get("on_art"))),
        "completed_prophylaxis": CompletedProphylaxisCalculator(
            store, metadata, build_config("prophylaxis", config.get("prophylaxis"))),
        "pregnancy_date": PregnancyDateCalculator(
            store, metadata, build_config("pregnancy", config.get("pregnancy"))),
        "routine_viral_load": RoutineMonitoringCalculator(
            store, metadata, art_start, build_config("routine", config.get("routine"))),
    }


class _CohortBuilder:

    def __init__(
            self,
            store: ObservationStore,
            metadata: MetadataDictionary,
            calculators: typing.Mapping[str, PatientCalculator],
            notepad: typing.Optional[Notepad],
    ):
        self._store = store
        self._metadata = metadata
        self._calculators = calculators
        self._notepad = notepad

    def composition(self, definition: Definition, label: str) -> CompositionCohort:
        expression = definition.get("expression")
        if not isinstance(expression, str) or not expression.strip():
            raise ConfigurationError(f"Composition {label!r} has no expression")
        cohorts = definition.get("cohorts") or {}
        if not isinstance(cohorts, dict):
            raise ConfigurationError(f"Composition {label!r}: 'cohorts' must be an object")

        registrations: dict[str, Mapped] = {}
        for name, entry in cohorts.items():
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Cohort {name!r} must be an object")
            provider = self.provider(name, entry)
            mappings = entry.get("mappings")
            registrations[name] = (
                Mapped.straight_through(provider) if mappings is None else Mapped.map(provider, mappings)
            )
        logger.debug("Composition %r registers %s", label, sorted(registrations))
        return CompositionCohort(expression, registrations, definition.get("parameters") or ())

    def provider(self, name: str, entry: Definition) -> CohortProvider:
        kind = entry.get("type")
        if kind == "calculation":
            calculation = entry.get("calculation")
            if calculation not in self._calculators:
                raise ConfigurationError(f"Cohort {name!r}: unknown calculation {calculation!r}")
            return CalculationCohort(self._calculators[calculation], entry.get("parameters") or (), self._notepad)
        elif kind == "static":
            return StaticCohort(entry.get("patients") or ())
        elif kind == "coded_obs":
            try:
                time_modifier = TimeModifier(str(entry.get("time_modifier", "ANY")).upper())
            except ValueError as e:
                raise ConfigurationError(f"Cohort {name!r}: {e}") from e
            return CodedObsCohort(
                self._store,
                self._identifier("concept", self._require(name, entry, "concept")),
                [self._identifier("concept", a) for a in self._require(name, entry, "answers")],
                time_modifier=time_modifier,
                encounter_types=self._encounter_types(entry),
            )
        elif kind == "date_obs":
            return DateObsCohort(
                self._store,
                self._identifier("concept", self._require(name, entry, "concept")),
                encounter_types=self._encounter_types(entry),
            )
        elif kind == "alive":
            return AliveCohort(self._store)
        elif kind == "gender":
            return GenderCohort(self._store, entry.get("gender", "F"))
        elif kind == "program_enrollment":
            return ProgramEnrollmentCohort(
                self._store, self._identifier("program", self._require(name, entry, "program")))
        elif kind == "composition":
            return self.composition(entry, name)
        raise ConfigurationError(f"Cohort {name!r}: unknown type {kind!r}")

    @staticmethod
    def _require(name: str, entry: Definition, key: str):
        if entry.get(key) is None:
            raise ConfigurationError(f"Cohort {name!r} needs {key!r}")
        return entry[key]

    def _identifier(self, kind: str, value: typing.Union[str, int]) -> int:
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        if kind == "concept":
            return self._metadata.concept(value)
        elif kind == "program":
            return self._metadata.program(value)
        return self._metadata.encounter_type(value)

    def _encounter_types(self, entry: Definition) -> typing.Optional[list[int]]:
        values = entry.get("encounter_types")
        if values is None:
            return None
        return [self._identifier("encounter_type", v) for v in values]


def build_composition(
        definition: Definition,
        store: ObservationStore,
        metadata: MetadataDictionary,
        calculators: typing.Optional[typing.Mapping[str, PatientCalculator]] = None,
        notepad: typing.Optional[Notepad] = None,
) -> CompositionCohort:
    """
    Build the top-level composition of ``definition``. Calculators are built
    from the definition's ``config`` section unless supplied.
    """
    if calculators is None:
        calculators = build_calculators(store, metadata, definition.get("config"))
    builder = _CohortBuilder(store, metadata, calculators, notepad)
    return builder.composition(definition, definition.get("name", "composition"))
