"""
Observation store gateway.

`ObservationStore` is the read-only contract the calculators consume:
per-patient, chronologically ordered observations, encounters and program
enrollments filtered by concept, encounter type, location, answer and date
window. Every query returns an entry for every requested patient (an empty
list when there is no data) and never raises for "no data"; a failure of the
store itself surfaces as DataAccessError.

`DataFrameStore` implements the contract over pandas tables, e.g. the sheets
of an exported workbook (see loader.load_sheets_as_tables).
"""

import abc
import logging
import typing

import pandas as pd

from .errors import DataAccessError
from .model import Encounter, Enrollment, Observation, PatientId, VitalStatus
from .temporal import as_datetime

logger = logging.getLogger(__name__)

# Minimal required columns (after renaming) for each table
PATIENT_KEY_COLUMNS = {"patient_id"}
ENCOUNTER_KEY_COLUMNS = {"encounter_id", "patient_id", "encounter_type", "encounter_datetime"}
OBSERVATION_KEY_COLUMNS = {"obs_id", "patient_id", "concept", "obs_datetime"}
ENROLLMENT_KEY_COLUMNS = {"patient_id", "program", "date_enrolled"}

# Optional columns filled with NA when a table does not provide them
OPTIONAL_COLUMNS = {
    "patients": ("gender", "dead", "death_date"),
    "encounters": ("location",),
    "observations": ("encounter_id", "location", "value_numeric", "value_coded", "value_datetime"),
    "enrollments": ("location", "date_completed"),
}

Cohort = typing.Iterable[PatientId]


class ObservationStore(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def patient_ids(self) -> set[PatientId]:
        """Every patient known to the store."""
        raise NotImplementedError

    @abc.abstractmethod
    def observations(
            self,
            cohort: Cohort,
            concept: int,
            encounter_types: typing.Optional[typing.Collection[int]] = None,
            location: typing.Optional[int] = None,
            answers: typing.Optional[typing.Collection[int]] = None,
            on_or_after=None,
            on_or_before=None,
    ) -> dict[PatientId, list[Observation]]:
        raise NotImplementedError

    @abc.abstractmethod
    def encounters(
            self,
            cohort: Cohort,
            encounter_types: typing.Optional[typing.Collection[int]] = None,
            location: typing.Optional[int] = None,
            on_or_after=None,
            on_or_before=None,
    ) -> dict[PatientId, list[Encounter]]:
        raise NotImplementedError

    @abc.abstractmethod
    def enrollments(
            self,
            cohort: Cohort,
            program: int,
            location: typing.Optional[int] = None,
    ) -> dict[PatientId, list[Enrollment]]:
        raise NotImplementedError

    @abc.abstractmethod
    def genders(self, cohort: Cohort) -> dict[PatientId, typing.Optional[str]]:
        raise NotImplementedError

    @abc.abstractmethod
    def vital_statuses(self, cohort: Cohort) -> dict[PatientId, VitalStatus]:
        raise NotImplementedError


class DataFrameStore(ObservationStore):
    """
    Read-only store over four pandas tables: ``patients``, ``encounters``,
    ``observations`` and ``enrollments``. Missing tables are treated as empty.

    Observations are joined to their encounters once, at construction; an
    observation without its own location takes the encounter's location.
    Rows flagged ``voided`` are dropped.
    """

    def __init__(self, tables: typing.Mapping[str, pd.DataFrame]):
        try:
            self._patients = self._prepare(tables, "patients", PATIENT_KEY_COLUMNS, ())
            self._encounters = self._prepare(
                tables, "encounters", ENCOUNTER_KEY_COLUMNS, ("encounter_datetime",))
            observations = self._prepare(
                tables, "observations", OBSERVATION_KEY_COLUMNS, ("obs_datetime", "value_datetime"))
            self._enrollments = self._prepare(
                tables, "enrollments", ENROLLMENT_KEY_COLUMNS, ("date_enrolled", "date_completed"))
        except (ValueError, TypeError) as e:
            raise DataAccessError(f"Malformed store table: {e}") from e

        observations = observations.drop(
            columns=[c for c in ("encounter_type", "encounter_datetime", "encounter_location")
                     if c in observations.columns])
        joined = observations.merge(
            self._encounters[["encounter_id", "encounter_type", "encounter_datetime", "location"]]
            .rename(columns={"location": "encounter_location"}),
            on="encounter_id",
            how="left",
        )
        joined["location"] = joined["location"].fillna(joined["encounter_location"])
        self._observations = joined
        logger.debug(
            "Store holds %d patients, %d encounters, %d observations, %d enrollments",
            len(self._patients), len(self._encounters), len(self._observations), len(self._enrollments),
        )

    @staticmethod
    def _prepare(
            tables: typing.Mapping[str, pd.DataFrame],
            name: str,
            key_columns: set[str],
            date_columns: typing.Sequence[str],
    ) -> pd.DataFrame:
        """
        Copy a table, check its key columns, add missing optional columns and
        coerce identifiers to numbers and dates to datetimes.
        """
        df = tables.get(name)
        if df is None:
            df = pd.DataFrame(columns=sorted(key_columns))
        working = df.copy()

        missing = sorted(key_columns - set(working.columns))
        if missing:
            raise DataAccessError(f"Table {name!r}: missing required columns: {missing}")
        for column in OPTIONAL_COLUMNS[name]:
            if column not in working.columns:
                working[column] = None

        if "voided" in working.columns:
            working = working[~working["voided"].map(DataFrameStore._to_bool).astype(bool)].copy()

        for column in ("patient_id", "obs_id", "encounter_id", "encounter_type", "concept",
                       "program", "location", "value_coded", "value_numeric"):
            if column in working.columns:
                working[column] = pd.to_numeric(working[column], errors="coerce").astype("float64")
        if name == "patients":
            date_columns = ("death_date",)
        for column in date_columns:
            if working[column].isna().all():
                working[column] = pd.Series(pd.NaT, index=working.index, dtype="datetime64[ns]")
            else:
                working[column] = pd.to_datetime(working[column], errors="raise", format="mixed")
        return working.reset_index(drop=True)

    @staticmethod
    def _to_bool(value: typing.Any) -> bool:
        """
        Robust boolean parsing:
        - True for: 1, '1', 'true', 't', 'yes', 'y' (case-insensitive)
        - False for: 0, '0', 'false', 'f', 'no', 'n', '', None, NaN
        """
        if isinstance(value, bool):
            return value
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return False
        s = str(value).strip().lower()
        if s in {"1", "1.0", "true", "t", "yes", "y"}:
            return True
        if s in {"0", "0.0", "false", "f", "no", "n", ""}:
            return False
        return bool(value)

    @staticmethod
    def _optional_int(value: typing.Any) -> typing.Optional[int]:
        if value is None or pd.isna(value):
            return None
        return int(value)

    @staticmethod
    def _optional_float(value: typing.Any) -> typing.Optional[float]:
        if value is None or pd.isna(value):
            return None
        return float(value)

    @staticmethod
    def _date_mask(column: pd.Series, on_or_after, on_or_before) -> pd.Series:
        mask = pd.Series(True, index=column.index)
        if on_or_after is not None:
            mask &= column >= pd.Timestamp(as_datetime(on_or_after))
        if on_or_before is not None:
            mask &= column <= pd.Timestamp(as_datetime(on_or_before))
        return mask

    @staticmethod
    def _empty_result(cohort: Cohort) -> dict[PatientId, list]:
        return {patient_id: [] for patient_id in cohort}

    def patient_ids(self) -> set[PatientId]:
        ids: set[PatientId] = set()
        for table in (self._patients, self._encounters, self._observations, self._enrollments):
            ids.update(int(x) for x in table["patient_id"].dropna().unique())
        return ids

    def _encounter_from_row(self, row) -> typing.Optional[Encounter]:
        if pd.isna(row.encounter_id) or pd.isna(row.encounter_datetime):
            return None
        return Encounter(
            encounter_id=int(row.encounter_id),
            patient_id=int(row.patient_id),
            encounter_type=self._optional_int(row.encounter_type),
            encounter_datetime=row.encounter_datetime,
            location=self._optional_int(row.encounter_location),
        )

    def observations(
            self,
            cohort: Cohort,
            concept: int,
            encounter_types: typing.Optional[typing.Collection[int]] = None,
            location: typing.Optional[int] = None,
            answers: typing.Optional[typing.Collection[int]] = None,
            on_or_after=None,
            on_or_before=None,
    ) -> dict[PatientId, list[Observation]]:
        cohort = list(cohort)
        result = self._empty_result(cohort)
        frame = self._observations

        mask = frame["patient_id"].isin(cohort) & (frame["concept"] == concept)
        if encounter_types is not None:
            mask &= frame["encounter_type"].isin(list(encounter_types))
        if location is not None:
            mask &= frame["location"] == location
        if answers is not None:
            mask &= frame["value_coded"].isin(list(answers))
        mask &= self._date_mask(frame["obs_datetime"], on_or_after, on_or_before)

        selected = frame[mask].sort_values(["obs_datetime", "obs_id"], kind="stable")
        for row in selected.itertuples(index=False):
            result[int(row.patient_id)].append(
                Observation(
                    obs_id=int(row.obs_id),
                    patient_id=int(row.patient_id),
                    concept=int(row.concept),
                    obs_datetime=row.obs_datetime,
                    encounter=self._encounter_from_row(row),
                    location=self._optional_int(row.location),
                    value_numeric=self._optional_float(row.value_numeric),
                    value_coded=self._optional_int(row.value_coded),
                    value_datetime=row.value_datetime,
                )
            )
        return result

    def encounters(
            self,
            cohort: Cohort,
            encounter_types: typing.Optional[typing.Collection[int]] = None,
            location: typing.Optional[int] = None,
            on_or_after=None,
            on_or_before=None,
    ) -> dict[PatientId, list[Encounter]]:
        cohort = list(cohort)
        result = self._empty_result(cohort)
        frame = self._encounters

        mask = frame["patient_id"].isin(cohort)
        if encounter_types is not None:
            mask &= frame["encounter_type"].isin(list(encounter_types))
        if location is not None:
            mask &= frame["location"] == location
        mask &= self._date_mask(frame["encounter_datetime"], on_or_after, on_or_before)

        selected = frame[mask].sort_values(["encounter_datetime", "encounter_id"], kind="stable")
        for row in selected.itertuples(index=False):
            result[int(row.patient_id)].append(
                Encounter(
                    encounter_id=int(row.encounter_id),
                    patient_id=int(row.patient_id),
                    encounter_type=int(row.encounter_type),
                    encounter_datetime=row.encounter_datetime,
                    location=self._optional_int(row.location),
                )
            )
        return result

    def enrollments(
            self,
            cohort: Cohort,
            program: int,
            location: typing.Optional[int] = None,
    ) -> dict[PatientId, list[Enrollment]]:
        cohort = list(cohort)
        result = self._empty_result(cohort)
        frame = self._enrollments

        mask = frame["patient_id"].isin(cohort) & (frame["program"] == program)
        if location is not None:
            mask &= frame["location"] == location

        selected = frame[mask].sort_values("date_enrolled", kind="stable")
        for row in selected.itertuples(index=False):
            result[int(row.patient_id)].append(
                Enrollment(
                    patient_id=int(row.patient_id),
                    program=int(row.program),
                    location=self._optional_int(row.location),
                    date_enrolled=row.date_enrolled,
                    date_completed=row.date_completed,
                )
            )
        return result

    def genders(self, cohort: Cohort) -> dict[PatientId, typing.Optional[str]]:
        cohort = list(cohort)
        result: dict[PatientId, typing.Optional[str]] = {patient_id: None for patient_id in cohort}
        frame = self._patients[self._patients["patient_id"].isin(cohort)]
        for row in frame.itertuples(index=False):
            if isinstance(row.gender, str) and row.gender.strip():
                result[int(row.patient_id)] = row.gender.strip()[0].upper()
        return result

    def vital_statuses(self, cohort: Cohort) -> dict[PatientId, VitalStatus]:
        cohort = list(cohort)
        result = {patient_id: VitalStatus(patient_id=patient_id) for patient_id in cohort}
        frame = self._patients[self._patients["patient_id"].isin(cohort)]
        for row in frame.itertuples(index=False):
            patient_id = int(row.patient_id)
            result[patient_id] = VitalStatus(
                patient_id=patient_id,
                dead=self._to_bool(row.dead),
                death_date=row.death_date,
            )
        return result
