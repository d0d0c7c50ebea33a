from datetime import date

import pytest

from fleetguard.fuel_engine import (
    FuelThresholds,
    analyze_fuel_entry,
    analyze_fuel_series,
    reference_price,
    reference_rate,
)


def _entry(km_depart, km_arrivee, litres, montant=None, day=date(2024, 1, 10)):
    return {
        'date': day,
        'km_depart': km_depart,
        'km_arrivee': km_arrivee,
        'litres': litres,
        'montant': montant if montant is not None else litres * 5000,
    }


PREVIOUS = {'date': date(2024, 1, 1), 'km_arrivee': 10000}


def test_normal_refuel_has_rate_and_no_warning():
    analysis = analyze_fuel_entry(_entry(10000, 10500, 40), previous=PREVIOUS)

    assert analysis.distance == pytest.approx(500)
    assert analysis.raw_consumption == pytest.approx(8.0)
    assert analysis.consumption_rate == pytest.approx(8.0)
    assert analysis.unit_price == pytest.approx(5000)
    assert analysis.warnings == []
    assert not analysis.is_suspicious
    assert not analysis.is_corrected


def test_high_consumption_is_flagged():
    analysis = analyze_fuel_entry(_entry(10000, 10100, 40), previous=PREVIOUS)

    assert analysis.raw_consumption == pytest.approx(40.0)
    assert analysis.is_suspicious
    assert any('above maximum' in w for w in analysis.warnings)


def test_low_consumption_is_flagged():
    analysis = analyze_fuel_entry(_entry(10000, 11000, 20), previous=PREVIOUS)

    assert analysis.raw_consumption == pytest.approx(2.0)
    assert any('below minimum' in w for w in analysis.warnings)


def test_odometer_going_backwards_has_no_rate():
    analysis = analyze_fuel_entry(_entry(10500, 10400, 30))

    assert analysis.raw_consumption is None
    assert analysis.consumption_rate is None
    assert analysis.is_suspicious
    assert any('did not advance' in w for w in analysis.warnings)


def test_excessive_distance_is_flagged():
    analysis = analyze_fuel_entry(_entry(10000, 12000, 100), previous=PREVIOUS)

    assert any('between two fills' in w for w in analysis.warnings)


def test_first_reading_without_start_is_a_baseline():
    analysis = analyze_fuel_entry(_entry(None, 10000, 40))

    assert analysis.is_baseline
    assert analysis.distance == 0
    assert analysis.consumption_rate is None
    assert not analysis.is_suspicious


def test_missing_start_is_taken_from_previous_fill():
    analysis = analyze_fuel_entry(_entry(None, 10400, 32), previous=PREVIOUS)

    assert analysis.km_depart == pytest.approx(10000)
    assert analysis.consumption_rate == pytest.approx(8.0)
    assert not analysis.is_baseline


def test_overlap_with_previous_fill():
    previous = {'date': date(2024, 1, 1), 'km_arrivee': 10500}
    analysis = analyze_fuel_entry(_entry(10400, 10900, 40), previous=previous)

    assert any('overlaps previous fill' in w for w in analysis.warnings)


def test_unrecorded_distance_since_previous_fill():
    analysis = analyze_fuel_entry(_entry(10200, 10700, 40), previous=PREVIOUS)

    assert any('unrecorded' in w for w in analysis.warnings)


def test_small_gap_is_tolerated():
    analysis = analyze_fuel_entry(_entry(10030, 10530, 40), previous=PREVIOUS)

    assert analysis.warnings == []


def test_second_refuel_on_the_same_day():
    previous = {'date': date(2024, 1, 10), 'km_arrivee': 10000}
    analysis = analyze_fuel_entry(_entry(10000, 10500, 40), previous=previous)

    assert analysis.warnings == ['Second refuel on the same day']


def test_volume_above_tank_capacity():
    analysis = analyze_fuel_entry(_entry(10000, 11000, 70), previous=PREVIOUS, tank_capacity=60)

    assert any('exceeds tank capacity' in w for w in analysis.warnings)


def test_volume_within_tank_margin_is_accepted():
    analysis = analyze_fuel_entry(_entry(10000, 11000, 62), previous=PREVIOUS, tank_capacity=60)

    assert analysis.warnings == []


def test_unit_price_far_from_usual():
    entry = _entry(10000, 10500, 40, montant=280000)
    analysis = analyze_fuel_entry(entry, previous=PREVIOUS, reference_price=5000)

    assert analysis.unit_price == pytest.approx(7000)
    assert any('Unit price' in w for w in analysis.warnings)


def test_rate_far_above_vehicle_reference():
    analysis = analyze_fuel_entry(_entry(10000, 10500, 65), previous=PREVIOUS, reference_rate=8)

    assert analysis.raw_consumption == pytest.approx(13.0)
    assert any('vehicle reference' in w for w in analysis.warnings)


def test_correction_rewrites_arrival_from_reference():
    analysis = analyze_fuel_entry(
        _entry(10000, 10100, 40), previous=PREVIOUS, reference_rate=8, correct_odometer=True,
    )

    assert analysis.is_corrected
    assert analysis.is_suspicious
    assert analysis.km_arrivee == pytest.approx(10500)
    assert analysis.distance == pytest.approx(500)
    assert analysis.consumption_rate == pytest.approx(8.0)
    assert analysis.raw_consumption == pytest.approx(40.0)
    assert any('corrected from' in w for w in analysis.warnings)


def test_correction_without_reference_clamps_to_band():
    analysis = analyze_fuel_entry(_entry(10000, 10100, 40), previous=PREVIOUS, correct_odometer=True)

    assert analysis.consumption_rate == pytest.approx(25.0)
    assert analysis.km_arrivee == pytest.approx(10160)


def test_correction_leaves_in_band_entries_alone():
    analysis = analyze_fuel_entry(_entry(10000, 10500, 40), previous=PREVIOUS, correct_odometer=True)

    assert not analysis.is_corrected
    assert analysis.km_arrivee == pytest.approx(10500)


def test_custom_thresholds():
    thresholds = FuelThresholds(max_rate=50.0)
    analysis = analyze_fuel_entry(_entry(10000, 10100, 40), previous=PREVIOUS, thresholds=thresholds)

    assert analysis.warnings == []


def test_thresholds_from_config():
    thresholds = FuelThresholds.from_config({'FUEL_MAX_RATE': '30', 'FUEL_GAP_TOLERANCE': 10})

    assert thresholds.max_rate == pytest.approx(30.0)
    assert thresholds.gap_tolerance == pytest.approx(10.0)
    assert thresholds.min_rate == pytest.approx(3.0)


def test_arrival_odometer_is_required():
    with pytest.raises(ValueError):
        analyze_fuel_entry({'date': date(2024, 1, 1), 'litres': 10})


def test_reference_rate_ignores_suspicious_and_empty_rates():
    history = [
        {'consumption_rate': 8, 'is_suspicious': 0},
        {'consumption_rate': 10, 'is_suspicious': 0},
        {'consumption_rate': 40, 'is_suspicious': 1},
        {'consumption_rate': None, 'is_suspicious': 0},
    ]

    assert reference_rate(history) == pytest.approx(9.0)
    assert reference_rate([]) is None


def test_reference_price_is_the_median_unit_price():
    history = [
        {'litres': 40, 'montant': 200000},
        {'litres': 50, 'montant': 260000},
        {'litres': 10, 'montant': 0},
    ]

    assert reference_price(history) == pytest.approx(5100)


def test_series_is_sorted_and_chained():
    entries = [
        {'date': date(2024, 1, 20), 'km_depart': None, 'km_arrivee': 11000, 'litres': 40, 'montant': 200000},
        {'date': date(2024, 1, 1), 'km_depart': None, 'km_arrivee': 10000, 'litres': 30, 'montant': 150000},
        {'date': date(2024, 1, 10), 'km_depart': None, 'km_arrivee': 10500, 'litres': 40, 'montant': 200000},
    ]

    results = analyze_fuel_series(entries)

    assert [e['date'].day for e, _ in results] == [1, 10, 20]
    first, second, third = (a for _, a in results)
    assert first.is_baseline
    assert second.km_depart == pytest.approx(10000)
    assert second.consumption_rate == pytest.approx(8.0)
    assert third.km_depart == pytest.approx(10500)
    assert not any(a.is_suspicious for _, a in results)


def test_series_chains_on_corrected_odometer():
    entries = [
        {'date': date(2024, 1, 10), 'km_depart': None, 'km_arrivee': 10100, 'litres': 40, 'montant': 200000},
        {'date': date(2024, 1, 20), 'km_depart': None, 'km_arrivee': 11000, 'litres': 40, 'montant': 200000},
    ]

    results = analyze_fuel_series(
        entries, previous=PREVIOUS, reference_rate=8, correct_odometer=True,
    )

    corrected = results[0][1]
    assert corrected.km_arrivee == pytest.approx(10500)
    assert results[1][1].km_depart == pytest.approx(10500)
    assert results[1][1].consumption_rate == pytest.approx(8.0)


@pytest.mark.parametrize('montant', [0, None])
def test_missing_amount_has_no_unit_price(montant):
    entry = {'date': date(2024, 1, 10), 'km_depart': 10000, 'km_arrivee': 10500, 'litres': 40, 'montant': montant}

    analysis = analyze_fuel_entry(entry, previous=PREVIOUS, reference_price=5000)

    assert analysis.unit_price is None
    assert analysis.warnings == []
    assert not analysis.is_suspicious


def test_corrected_arrival_keeps_one_decimal():
    analysis = analyze_fuel_entry(
        _entry(10000, 10100, 33), previous=PREVIOUS, reference_rate=7, correct_odometer=True,
    )

    assert analysis.km_arrivee == pytest.approx(10471.4)
    assert analysis.distance == pytest.approx(471.4)
    assert 33 / analysis.distance * 100 == pytest.approx(analysis.consumption_rate, rel=1e-3)
