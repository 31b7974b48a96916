"""
ART initiation calculators.
"""

import logging
import typing
from dataclasses import dataclass

from stairval.notepad import Notepad

from . import calculations
from .calculator import Params, PatientCalculator
from .context import CalculationContext
from .metadata import MetadataDictionary
from .model import FactResult, PatientId
from .store import ObservationStore
from .temporal import months_between

logger = logging.getLogger(__name__)


class InitialArtStartDateCalculator(PatientCalculator):
    """
    Date each patient started antiretroviral therapy: the earliest of
      - enrollment in the ART program,
      - an ARV plan observation answered "start drugs",
      - a historical ART start date recorded by the clinician,
      - a "transferred in from another facility" observation answered yes,
      - the first pharmacy (drug pick-up) encounter,
    all on or before the reference date at the run's location.
    Patients with none of these get None.
    """

    def __init__(self, store: ObservationStore, metadata: MetadataDictionary):
        self._store = store
        self._metadata = metadata

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
        art_encounter_types = md.encounter_types("pharmacy", "adult_followup", "pediatric_followup")
        intake_encounter_types = md.encounter_types(
            "adult_initial", "pediatric_initial", "adult_followup", "pediatric_followup")

        enrollments = calculations.first_enrollment(
            self._store, md.program("art"), cohort, context, location=location)
        started_drugs = calculations.all_observations(
            self._store, md.concept("arv_plan"), cohort, context,
            answers=[md.concept("start_drugs")], encounter_types=art_encounter_types, location=location)
        historical = calculations.all_observations(
            self._store, md.concept("historical_drug_start_date"), cohort, context,
            encounter_types=art_encounter_types, location=location)
        transferred_in = calculations.first_observation(
            self._store, md.concept("transfer_from_other_facility"), cohort, context,
            answers=[md.concept("yes")], encounter_types=intake_encounter_types, location=location)
        pharmacy = calculations.first_encounter(
            self._store, md.encounter_type("pharmacy"), cohort, context, location=location)

        result: FactResult = {}
        for patient_id in cohort:
            candidates = []
            enrollment = enrollments[patient_id]
            if enrollment is not None:
                candidates.append(enrollment.date_enrolled)
            if started_drugs[patient_id]:
                candidates.append(started_drugs[patient_id][0].obs_datetime)
            candidates.extend(
                obs.value_datetime for obs in historical[patient_id]
                if obs.value_datetime is not None and obs.value_datetime <= context.now
            )
            if transferred_in[patient_id] is not None:
                candidates.append(transferred_in[patient_id].obs_datetime)
            if pharmacy[patient_id] is not None:
                candidates.append(pharmacy[patient_id].encounter_datetime)
            result[patient_id] = min(candidates) if candidates else None

        logger.debug("ART start date found for %d of %d patients",
                     sum(1 for v in result.values() if v is not None), len(cohort))
        return result


@dataclass(frozen=True)
class OnArtConfig:
    minimum_months_on_art: int = 3


class OnArtForMoreThanXMonthsCalculator(PatientCalculator):
    """
    True when the patient's last viral load result was taken at least
    ``minimum_months_on_art`` calendar months after ART initiation.
    """

    def __init__(
            self,
            store: ObservationStore,
            metadata: MetadataDictionary,
            art_start: PatientCalculator,
            config: OnArtConfig = OnArtConfig(),
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
        start_dates = self._art_start.evaluate(cohort, params, context, notepad)
        last_vl = calculations.last_observation(
            self._store, self._metadata.concept("hiv_viral_load"), cohort, context,
            location=context.location)

        result: FactResult = {}
        for patient_id in cohort:
            start = start_dates.get(patient_id)
            vl = last_vl[patient_id]
            result[patient_id] = (
                start is not None
                and vl is not None
                and months_between(start, vl.obs_datetime) >= self._config.minimum_months_on_art
            )
        return result
