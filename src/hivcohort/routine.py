"""
Routine viral load monitoring for adults and children on ART.

A patient on ART whose latest viral load result falls in the last
12 months (strictly after ``now - 12 months`` and strictly before ``now``)
is on routine monitoring when the first of these criteria holds:

  (a) exactly one result in the window, taken more than 6 and at most
      9 months after ART initiation;
  (b) the two most recently created results (ordered by record creation,
      not by clinical date): the earlier one suppressed (below 1000 copies)
      and dated before the later one, which is 12 to 15 months after it;
  (c) a regimen line change recorded before the latest result and a first
      follow-up encounter on or before it, with no other result strictly
      between that encounter and the latest result.

Month bounds are calendar-shifted dates, so "more than 6 months" means
after the date six calendar months later.

Criterion (b) pairs results from the whole history up to ``now``, not only
those inside the 12-month window; only the later-created one must be in it.
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
from .model import Encounter, FactResult, Observation, PatientId
from .store import ObservationStore
from .temporal import add_months

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutineConfig:
    window_months: int = 12
    first_result_min_months: int = 6  # exclusive
    first_result_max_months: int = 9  # inclusive
    suppression_threshold: float = 1000
    repeat_min_months: int = 12
    repeat_max_months: int = 15


class RoutineMonitoringCalculator(PatientCalculator):
    def __init__(
            self,
            store: ObservationStore,
            metadata: MetadataDictionary,
            art_start: PatientCalculator,
            config: RoutineConfig = RoutineConfig(),
    ):
        self._store = store
        self._metadata = metadata
        self._art_start = art_start
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

        art_start_dates = self._art_start.evaluate(cohort, params, context, notepad)
        viral_loads = calculations.all_observations(
            self._store, md.concept("hiv_viral_load"), cohort, context, location=location)
        regimen_changes = calculations.last_observation(
            self._store, md.concept("regimen"), cohort, context, location=location)
        first_adult = calculations.first_encounter(
            self._store, md.encounter_type("adult_followup"), cohort, context, location=location)
        first_pediatric = calculations.first_encounter(
            self._store, md.encounter_type("pediatric_followup"), cohort, context, location=location)

        window_start = add_months(context.now, -self._config.window_months)
        result: FactResult = {}
        for patient_id in cohort:
            art_start = art_start_dates.get(patient_id)
            history = viral_loads[patient_id]
            if art_start is None or not history:
                result[patient_id] = False
                continue

            latest = history[-1]
            if not window_start < latest.obs_datetime < context.now:
                result[patient_id] = False
                continue
            in_window = [obs for obs in history if window_start < obs.obs_datetime < context.now]

            follow_up = first_adult[patient_id] or first_pediatric[patient_id]
            result[patient_id] = (
                self._single_result_after_initiation(in_window, art_start)
                or self._suppressed_then_repeated(history, window_start, context.now)
                or self._after_regimen_change(history, latest, regimen_changes[patient_id], follow_up)
            )

        logger.debug("%d of %d patients on routine viral load monitoring",
                     sum(1 for v in result.values() if v), len(cohort))
        return result

    def _single_result_after_initiation(self, in_window: list[Observation], art_start: datetime) -> bool:
        if len(in_window) != 1:
            return False
        vl_date = in_window[0].obs_datetime
        lower = add_months(art_start, self._config.first_result_min_months)
        upper = add_months(art_start, self._config.first_result_max_months)
        return lower < vl_date <= upper

    def _suppressed_then_repeated(self, history: list[Observation], window_start: datetime, now: datetime) -> bool:
        if len(history) < 2:
            return False
        # record creation order, not clinical date
        by_creation = sorted(history, key=lambda obs: obs.obs_id)
        previous, current = by_creation[-2], by_creation[-1]
        if not window_start < current.obs_datetime < now:
            return False
        if previous.value_numeric is None or previous.value_numeric >= self._config.suppression_threshold:
            return False
        if not previous.obs_datetime < current.obs_datetime:
            return False
        lower = add_months(previous.obs_datetime, self._config.repeat_min_months)
        upper = add_months(previous.obs_datetime, self._config.repeat_max_months)
        return lower <= current.obs_datetime <= upper

    @staticmethod
    def _after_regimen_change(
            history: list[Observation],
            latest: Observation,
            regimen_change: typing.Optional[Observation],
            follow_up: typing.Optional[Encounter],
    ) -> bool:
        if regimen_change is None or follow_up is None:
            return False
        latest_date = latest.obs_datetime
        follow_up_date = follow_up.encounter_datetime
        if not (regimen_change.obs_datetime < latest_date and follow_up_date <= latest_date):
            return False
        # any result between the first follow-up and the latest result disqualifies
        return not any(follow_up_date < obs.obs_datetime < latest_date for obs in history)
