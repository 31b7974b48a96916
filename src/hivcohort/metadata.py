"""
Metadata dictionary.

Resolves the logical names used by calculators (``hiv_viral_load``,
``adult_followup``, ...) to the identifiers of the observation store.
The table is read-only once built and is handed to calculators at
construction time.
"""

import logging
import typing

import pandas as pd

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# EPTS (OpenMRS Mozambique) identifiers
DEFAULT_CONCEPTS = {
    "hiv_viral_load": 856,
    "regimen": 1088,
    "yes": 1065,
    "arv_plan": 1255,
    "start_drugs": 1256,
    "historical_drug_start_date": 1190,
    "transfer_from_other_facility": 1369,
    "pregnant": 1982,
    "gestation": 44,
    "weeks_pregnant": 1279,
    "pregnancy_due_date": 1600,
    "breastfeeding": 6332,
    "criteria_for_art_start": 6334,
    "prior_delivery_date": 5599,
    "isoniazid_usage": 6122,
    "isoniazid_start_date": 6128,
    "isoniazid_end_date": 6129,
}

DEFAULT_ENCOUNTER_TYPES = {
    "adult_initial": 5,
    "adult_followup": 6,
    "pediatric_initial": 7,
    "pediatric_followup": 9,
    "laboratory": 13,
    "pharmacy": 18,
}

DEFAULT_PROGRAMS = {
    "art": 2,
    "ptv_etv": 8,
}

METADATA_KINDS = ("concept", "encounter_type", "program")


class MetadataDictionary:
    """
    Lookup of logical names to store identifiers, one namespace per kind.
    Unknown names raise ConfigurationError.
    """

    def __init__(
        self,
        concepts: typing.Optional[typing.Mapping[str, int]] = None,
        encounter_types: typing.Optional[typing.Mapping[str, int]] = None,
        programs: typing.Optional[typing.Mapping[str, int]] = None,
    ):
        self._tables = {
            "concept": dict(DEFAULT_CONCEPTS if concepts is None else concepts),
            "encounter_type": dict(DEFAULT_ENCOUNTER_TYPES if encounter_types is None else encounter_types),
            "program": dict(DEFAULT_PROGRAMS if programs is None else programs),
        }

    def _lookup(self, kind: str, name: str) -> int:
        try:
            return self._tables[kind][name]
        except KeyError:
            raise ConfigurationError(f"Unknown {kind} {name!r} in metadata dictionary")

    def concept(self, name: str) -> int:
        return self._lookup("concept", name)

    def encounter_type(self, name: str) -> int:
        return self._lookup("encounter_type", name)

    def encounter_types(self, *names: str) -> list[int]:
        return [self.encounter_type(name) for name in names]

    def program(self, name: str) -> int:
        return self._lookup("program", name)

    def with_overrides(self, table: pd.DataFrame) -> "MetadataDictionary":
        """
        Return a new dictionary with rows of a ``kind``/``name``/``identifier``
        table layered over this one.
        """
        missing = {"kind", "name", "identifier"} - set(table.columns)
        if missing:
            raise ConfigurationError(f"Metadata table is missing columns: {sorted(missing)}")

        merged = {kind: dict(values) for kind, values in self._tables.items()}
        for _, row in table.iterrows():
            kind = str(row["kind"]).strip().lower().replace(" ", "_")
            if kind not in METADATA_KINDS:
                raise ConfigurationError(f"Unknown metadata kind {row['kind']!r}")
            merged[kind][str(row["name"]).strip()] = int(row["identifier"])
        logger.debug("Applied %d metadata overrides", len(table))
        return MetadataDictionary(
            concepts=merged["concept"],
            encounter_types=merged["encounter_type"],
            programs=merged["program"],
        )
