"""
Pregnancy date relative to the latest viral load result.
"""

import logging
import typing
from dataclasses import dataclass
from datetime import datetime

from stairval.notepad import Notepad

from . import calculations
from .calculator import Params, PatientCalculator
from .context import CalculationContext
from .metadata import MetadataDictionary
from .model import Enrollment, FactResult, Observation, PatientId
from .store import ObservationStore
from .temporal import add_months, within

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PregnancyConfig:
    index_lookback_months: int = 12
    pregnancy_lookback_months: int = 9


class PregnancyDateCalculator(PatientCalculator):
    """
    For women with a viral load result in the last 12 months (the index
    event), return the most recent date on which pregnancy was documented in
    the 9 months up to and including that result. Four kinds of evidence
    count, and only recency decides between them:
      - a "pregnant" observation answered "gestation",
      - a "weeks pregnant" observation with a numeric value,
      - a "pregnancy due date" observation,
      - enrollment in the PTV/ETV program at the run's location.
    Observation evidence is dated by its encounter. Men, and women without an
    index event or any evidence, get None.
    """

    def __init__(
            self,
            store: ObservationStore,
            metadata: MetadataDictionary,
            config: PregnancyConfig = PregnancyConfig(),
    ):
        self._store = store
        self._metadata = metadata
        self._config = config

    def evaluate(
            self,
            cohort: typing.Iterable[PatientId],
            params: typing.Optional[Params],
            context: CalculationContext,
            notepad: typing.Optional[Notepad] = None,
    ) -> FactResult:
        cohort = list(cohort)
        result: FactResult = {patient_id: None for patient_id in cohort}
        female = calculations.female(self._store, cohort)
        women = [patient_id for patient_id in cohort if patient_id in female]
        if not women:
            return result

        md = self._metadata
        location = context.location
        index_start = add_months(context.now, -self._config.index_lookback_months)

        pregnant = calculations.all_observations(
            self._store, md.concept("pregnant"), women, context,
            answers=[md.concept("gestation")], location=location)
        weeks_pregnant = calculations.all_observations(
            self._store, md.concept("weeks_pregnant"), women, context, location=location)
        due_dates = calculations.all_observations(
            self._store, md.concept("pregnancy_due_date"), women, context, location=location)
        ptv_enrollments = calculations.all_enrollments(
            self._store, md.program("ptv_etv"), women, location=location)
        last_vl = calculations.last_observation(
            self._store, md.concept("hiv_viral_load"), women, context,
            encounter_types=md.encounter_types("laboratory", "adult_followup", "pediatric_followup"),
            location=location, on_or_after=index_start, on_or_before=context.now)

        for patient_id in women:
            index_obs = last_vl[patient_id]
            if index_obs is None:
                continue
            index_date = index_obs.obs_datetime
            window_start = add_months(index_date, -self._config.pregnancy_lookback_months)

            candidates = [
                self._latest_encounter_date(pregnant[patient_id], window_start, index_date),
                self._latest_encounter_date(
                    [obs for obs in weeks_pregnant[patient_id] if obs.value_numeric is not None],
                    window_start, index_date),
                self._latest_encounter_date(due_dates[patient_id], window_start, index_date),
                self._latest_enrollment_date(ptv_enrollments[patient_id], window_start, index_date),
            ]
            dates = [d for d in candidates if d is not None]
            result[patient_id] = max(dates) if dates else None
        return result

    @staticmethod
    def _latest_encounter_date(
            observations: list[Observation], window_start: datetime, index_date: datetime
    ) -> typing.Optional[datetime]:
        dates = [obs.encounter_datetime for obs in observations
                 if within(obs.encounter_datetime, window_start, index_date)]
        return max(dates) if dates else None

    @staticmethod
    def _latest_enrollment_date(
            enrollments: list[Enrollment], window_start: datetime, index_date: datetime
    ) -> typing.Optional[datetime]:
        dates = [e.date_enrolled for e in enrollments
                 if e.date_enrolled is not None and within(e.date_enrolled, window_start, index_date)]
        return max(dates) if dates else None
