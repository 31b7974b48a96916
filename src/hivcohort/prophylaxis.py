"""
Completed TB preventive treatment (isoniazid prophylaxis).

A patient completed prophylaxis through one of two mutually exclusive routes:
  1) explicit dates: a start date and a completion date at least
     ``minimum_duration_days`` apart;
  2) usage count: only a start date, plus at least ``minimum_usage_count``
     "yes, taking isoniazid" answers within ``usage_window_months`` of it.

Evidence is inconsistent when a completion date precedes the start date, or
when a completion date exists without a start date. Such patients are not
counted as complete, and a warning is added to the notepad so the caller can
report the data-quality problem.
"""

import logging
import typing
from dataclasses import dataclass

from stairval.notepad import Notepad

from . import calculations
from .calculator import Params, PatientCalculator, date_parameter
from .context import CalculationContext
from .metadata import MetadataDictionary
from .model import FactResult, Observation, PatientId
from .store import ObservationStore
from .temporal import add_months, days_between, within

logger = logging.getLogger(__name__)

BEGIN_PERIOD_START_DATE = "beginPeriodStartDate"
BEGIN_PERIOD_END_DATE = "beginPeriodEndDate"
COMPLETION_PERIOD_START_DATE = "completionPeriodStartDate"
COMPLETION_PERIOD_END_DATE = "completionPeriodEndDate"


@dataclass(frozen=True)
class ProphylaxisConfig:
    minimum_duration_days: int = 180
    minimum_usage_count: int = 6
    usage_window_months: int = 7


class CompletedProphylaxisCalculator(PatientCalculator):
    def __init__(
            self,
            store: ObservationStore,
            metadata: MetadataDictionary,
            config: ProphylaxisConfig = ProphylaxisConfig(),
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
        md = self._metadata
        location = context.location

        begin_start = date_parameter(params, context, BEGIN_PERIOD_START_DATE)
        begin_end = date_parameter(params, context, BEGIN_PERIOD_END_DATE)
        completion_start = date_parameter(params, context, COMPLETION_PERIOD_START_DATE)
        completion_end = date_parameter(params, context, COMPLETION_PERIOD_END_DATE)

        start_observations = calculations.first_observation(
            self._store, md.concept("isoniazid_start_date"), cohort, context,
            location=location, on_or_after=begin_start, on_or_before=begin_end)
        end_observations = calculations.last_observation(
            self._store, md.concept("isoniazid_end_date"), cohort, context,
            location=location, on_or_after=completion_start, on_or_before=completion_end)
        usage_observations = calculations.all_observations(
            self._store, md.concept("isoniazid_usage"), cohort, context,
            answers=[md.concept("yes")],
            encounter_types=md.encounter_types("adult_followup", "pediatric_followup"),
            location=location)

        result: FactResult = {}
        for patient_id in cohort:
            start_obs = start_observations[patient_id]
            end_obs = end_observations[patient_id]
            start_date = start_obs.value_datetime if start_obs is not None else None
            end_date = end_obs.value_datetime if end_obs is not None else None

            inconsistent = (start_date is not None and end_date is not None and start_date > end_date) or (
                start_date is None and end_date is not None)
            if inconsistent:
                self._report_inconsistent(patient_id, start_date, end_date, notepad)
                result[patient_id] = False
            elif start_date is None:
                result[patient_id] = False
            elif end_date is not None:
                result[patient_id] = days_between(start_date, end_date) >= self._config.minimum_duration_days
            else:
                yes_answers = self._count_usage(usage_observations[patient_id], start_date)
                result[patient_id] = yes_answers >= self._config.minimum_usage_count
        return result

    def _count_usage(self, observations: list[Observation], start_date) -> int:
        usage_end = add_months(start_date, self._config.usage_window_months)
        return sum(1 for obs in observations if within(obs.obs_datetime, start_date, usage_end))

    @staticmethod
    def _report_inconsistent(patient_id: PatientId, start_date, end_date, notepad: typing.Optional[Notepad]):
        if start_date is None:
            msg = f"Patient {patient_id}: prophylaxis completion date {end_date:%Y-%m-%d} without a start date"
        else:
            msg = (f"Patient {patient_id}: prophylaxis completion date {end_date:%Y-%m-%d} "
                   f"precedes start date {start_date:%Y-%m-%d}")
        logger.warning(msg)
        if notepad is not None:
            notepad.add_warning(msg)
