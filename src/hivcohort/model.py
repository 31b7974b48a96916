"""
Clinical record domain models.

Defines the read-only records supplied by the observation store
(encounters, observations, program enrollments, vital status) and the
result types produced by calculators.
"""

import typing
from dataclasses import dataclass
from datetime import datetime

from .temporal import as_datetime

PatientId = int
FactValue = typing.Union[bool, datetime, None, typing.List["Observation"]]
# one entry per patient of the evaluated cohort, never a missing key
FactResult = typing.Dict[PatientId, FactValue]
PatientSet = typing.Set[PatientId]


@dataclass(frozen=True)
class Encounter:
    """
    A clinical visit.

    Attributes:
        encounter_id: Store identifier of the encounter.
        patient_id: Patient the encounter belongs to.
        encounter_type: Store identifier of the encounter type (e.g. adult follow-up).
        encounter_datetime: When the visit happened.
        location: Store identifier of the health facility, if known.
    """

    encounter_id: int
    patient_id: PatientId
    encounter_type: int
    encounter_datetime: datetime
    location: typing.Optional[int] = None

    def __post_init__(self):
        moment = as_datetime(self.encounter_datetime)
        if moment is None:
            raise ValueError(f"Encounter {self.encounter_id!r} has no encounter_datetime")
        object.__setattr__(self, "encounter_datetime", moment)


@dataclass(frozen=True)
class Observation:
    """
    A single timestamped clinical fact.

    Attributes:
        obs_id: Store identifier; increases with record creation order.
        patient_id: Patient the observation belongs to.
        concept: Store identifier of the question concept.
        obs_datetime: Clinical timestamp of the observation.
        encounter: Encounter the observation was recorded in, if any.
        location: Facility where the observation was recorded, if known.
        value_numeric / value_coded / value_datetime: The answer.
    """

    obs_id: int
    patient_id: PatientId
    concept: int
    obs_datetime: datetime
    encounter: typing.Optional[Encounter] = None
    location: typing.Optional[int] = None
    value_numeric: typing.Optional[float] = None
    value_coded: typing.Optional[int] = None
    value_datetime: typing.Optional[datetime] = None

    def __post_init__(self):
        moment = as_datetime(self.obs_datetime)
        if moment is None:
            raise ValueError(f"Observation {self.obs_id!r} has no obs_datetime")
        object.__setattr__(self, "obs_datetime", moment)
        object.__setattr__(self, "value_datetime", as_datetime(self.value_datetime))

    @property
    def encounter_datetime(self) -> datetime:
        """Date of the enclosing encounter, falling back to the observation's own date."""
        if self.encounter is not None:
            return self.encounter.encounter_datetime
        return self.obs_datetime


@dataclass(frozen=True)
class Enrollment:
    """
    A patient's participation in a care program.

    Attributes:
        patient_id: Enrolled patient.
        program: Store identifier of the program (e.g. PTV/ETV).
        location: Facility of the enrollment, if known.
        date_enrolled: Start of the enrollment.
        date_completed: End of the enrollment; None while still active.
    """

    patient_id: PatientId
    program: int
    location: typing.Optional[int]
    date_enrolled: typing.Optional[datetime]
    date_completed: typing.Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "date_enrolled", as_datetime(self.date_enrolled))
        object.__setattr__(self, "date_completed", as_datetime(self.date_completed))

    def is_active_on(self, on_date) -> bool:
        moment = as_datetime(on_date)
        if self.date_enrolled is None or self.date_enrolled > moment:
            return False
        return self.date_completed is None or self.date_completed > moment


@dataclass(frozen=True)
class VitalStatus:
    patient_id: PatientId
    dead: bool = False
    death_date: typing.Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "death_date", as_datetime(self.death_date))
