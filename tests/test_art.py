"""
ART initiation date and time on ART.
"""

from datetime import datetime

from hivcohort.art import InitialArtStartDateCalculator, OnArtConfig, OnArtForMoreThanXMonthsCalculator

VL, ARV_PLAN, START_DRUGS, HISTORICAL_START = 856, 1255, 1256, 1190
TRANSFER_IN, YES, NO = 1369, 1065, 1066
ADULT_INITIAL, ADULT_FOLLOWUP, LAB, PHARMACY = 5, 6, 13, 18
ART = 2
NOW = datetime(2021, 1, 1)


def test_earliest_evidence_is_the_start_date(records, metadata, context_at):
    records.enrollment(1, ART, datetime(2019, 5, 1))
    records.obs(1, ARV_PLAN, datetime(2019, 3, 1), encounter_type=ADULT_FOLLOWUP, value_coded=START_DRUGS)
    records.encounter(1, PHARMACY, datetime(2019, 4, 1))

    records.obs(2, HISTORICAL_START, datetime(2020, 1, 1), encounter_type=ADULT_FOLLOWUP,
                value_datetime=datetime(2017, 6, 1))
    records.encounter(2, PHARMACY, datetime(2020, 1, 1))

    records.encounter(3, PHARMACY, datetime(2020, 2, 1))

    result = InitialArtStartDateCalculator(records.store(), metadata).evaluate([1, 2, 3, 4], None, context_at(NOW))
    assert result == {
        1: datetime(2019, 3, 1),
        2: datetime(2017, 6, 1),
        3: datetime(2020, 2, 1),
        4: None,
    }


def test_future_evidence_is_ignored(records, metadata, context_at):
    records.obs(1, HISTORICAL_START, datetime(2020, 1, 1), encounter_type=ADULT_FOLLOWUP,
                value_datetime=datetime(2022, 1, 1))
    records.enrollment(1, ART, datetime(2022, 2, 1))

    result = InitialArtStartDateCalculator(records.store(), metadata).evaluate([1], None, context_at(NOW))
    assert result == {1: None}


def test_on_art_for_more_than_three_months(records, metadata, context_at):
    records.enrollment(1, ART, datetime(2020, 1, 1))
    records.obs(1, VL, datetime(2020, 4, 1), encounter_type=LAB)
    records.enrollment(2, ART, datetime(2020, 1, 15))
    records.obs(2, VL, datetime(2020, 4, 1), encounter_type=LAB)
    records.enrollment(3, ART, datetime(2020, 1, 1))
    store = records.store()

    art_start = InitialArtStartDateCalculator(store, metadata)
    calculator = OnArtForMoreThanXMonthsCalculator(store, metadata, art_start)
    assert calculator.evaluate([1, 2, 3], None, context_at(NOW)) == {1: True, 2: False, 3: False}

    lenient = OnArtForMoreThanXMonthsCalculator(store, metadata, art_start, OnArtConfig(minimum_months_on_art=2))
    assert lenient.evaluate([2], None, context_at(NOW)) == {2: True}


def test_transfer_in_counts_as_initiation(records, metadata, context_at):
    records.obs(1, TRANSFER_IN, datetime(2019, 1, 20), encounter_type=ADULT_INITIAL, value_coded=YES)
    records.obs(2, TRANSFER_IN, datetime(2019, 1, 20), encounter_type=ADULT_INITIAL, value_coded=NO)

    result = InitialArtStartDateCalculator(records.store(), metadata).evaluate([1, 2], None, context_at(NOW))
    assert result == {1: datetime(2019, 1, 20), 2: None}


def test_transferred_in_patient_needs_a_viral_load_after_three_months(records, metadata, context_at):
    records.obs(1, TRANSFER_IN, datetime(2019, 1, 20), encounter_type=ADULT_INITIAL, value_coded=YES)
    records.obs(1, VL, datetime(2018, 12, 12), encounter_type=LAB, value_numeric=2000)

    def on_art():
        store = records.store()
        calculator = OnArtForMoreThanXMonthsCalculator(store, metadata, InitialArtStartDateCalculator(store, metadata))
        return calculator.evaluate([1], None, context_at(datetime(2019, 6, 1)))

    assert on_art() == {1: False}

    records.obs(1, VL, datetime(2019, 5, 10), encounter_type=LAB, value_numeric=140)
    assert on_art() == {1: True}
