from datetime import datetime

import pandas as pd
import pytest
from stairval.notepad import create_notepad

from hivcohort.context import CalculationContext
from hivcohort.metadata import MetadataDictionary
from hivcohort.store import DataFrameStore

LOCATION = 1


class RecordBuilder:
    """
    Accumulates rows for the four store tables. Every observation recorded
    with an ``encounter_type`` gets its own encounter on the same date.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = {
            "patients": [], "encounters": [], "observations": [], "enrollments": [],
        }
        self._next_encounter_id = 1
        self._next_obs_id = 1

    def patient(self, patient_id, gender="F", dead=False, death_date=None) -> "RecordBuilder":
        self.tables["patients"].append(
            {"patient_id": patient_id, "gender": gender, "dead": dead, "death_date": death_date})
        return self

    def encounter(self, patient_id, encounter_type, when, location=LOCATION) -> int:
        encounter_id = self._next_encounter_id
        self._next_encounter_id += 1
        self.tables["encounters"].append({
            "encounter_id": encounter_id,
            "patient_id": patient_id,
            "encounter_type": encounter_type,
            "encounter_datetime": when,
            "location": location,
        })
        return encounter_id

    def obs(self, patient_id, concept, when, encounter_type=None, location=LOCATION,
            value_numeric=None, value_coded=None, value_datetime=None, obs_id=None) -> int:
        encounter_id = None
        if encounter_type is not None:
            encounter_id = self.encounter(patient_id, encounter_type, when, location)
        if obs_id is None:
            obs_id = self._next_obs_id
        self._next_obs_id = max(self._next_obs_id, obs_id) + 1
        self.tables["observations"].append({
            "obs_id": obs_id,
            "patient_id": patient_id,
            "concept": concept,
            "obs_datetime": when,
            "encounter_id": encounter_id,
            "location": location,
            "value_numeric": value_numeric,
            "value_coded": value_coded,
            "value_datetime": value_datetime,
        })
        return obs_id

    def enrollment(self, patient_id, program, date_enrolled, location=LOCATION, date_completed=None):
        self.tables["enrollments"].append({
            "patient_id": patient_id,
            "program": program,
            "location": location,
            "date_enrolled": date_enrolled,
            "date_completed": date_completed,
        })
        return self

    def frames(self) -> dict[str, pd.DataFrame]:
        return {name: pd.DataFrame(rows) for name, rows in self.tables.items() if rows}

    def store(self) -> DataFrameStore:
        return DataFrameStore(self.frames())


@pytest.fixture
def records() -> RecordBuilder:
    return RecordBuilder()


@pytest.fixture(scope="session")
def metadata() -> MetadataDictionary:
    return MetadataDictionary()


@pytest.fixture
def notepad():
    return create_notepad("test")


@pytest.fixture
def context_at():
    """
    Factory for calculation contexts, e.g. `context_at(datetime(2020, 12, 31))`.
    """

    def _make(now: datetime, location=None, **cache) -> CalculationContext:
        return CalculationContext(now=now, location=location, cache=cache)

    return _make
