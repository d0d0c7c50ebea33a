"""Fuel consumption normalization and refuel anomaly detection.

Everything here is pure: callers load history from the database, pass
plain dicts in and persist the returned FuelAnalysis themselves.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from statistics import median


@dataclass(frozen=True)
class FuelThresholds:
    min_rate: float = 3.0           # L/100km
    max_rate: float = 25.0
    max_distance: float = 1200.0    # km between two fills
    default_tank: float = 120.0     # litres, when the vehicle has none
    tank_margin: float = 0.05
    reference_tolerance: float = 0.5
    price_tolerance: float = 0.25
    gap_tolerance: float = 50.0     # km of unrecorded driving accepted

    @classmethod
    def from_config(cls, config):
        return cls(
            min_rate=float(config.get('FUEL_MIN_RATE', cls.min_rate)),
            max_rate=float(config.get('FUEL_MAX_RATE', cls.max_rate)),
            max_distance=float(config.get('FUEL_MAX_DISTANCE', cls.max_distance)),
            default_tank=float(config.get('FUEL_DEFAULT_TANK', cls.default_tank)),
            reference_tolerance=float(config.get('FUEL_REFERENCE_TOLERANCE', cls.reference_tolerance)),
            price_tolerance=float(config.get('FUEL_PRICE_TOLERANCE', cls.price_tolerance)),
            gap_tolerance=float(config.get('FUEL_GAP_TOLERANCE', cls.gap_tolerance)),
        )


DEFAULT_THRESHOLDS = FuelThresholds()


@dataclass
class FuelAnalysis:
    km_depart: float
    km_arrivee: float
    distance: float
    raw_consumption: float | None
    consumption_rate: float | None
    unit_price: float | None
    warnings: list = field(default_factory=list)
    is_suspicious: bool = False
    is_corrected: bool = False
    is_baseline: bool = False

    def as_dict(self):
        return {
            'km_depart': self.km_depart,
            'km_arrivee': self.km_arrivee,
            'distance': self.distance,
            'raw_consumption': self.raw_consumption,
            'consumption_rate': self.consumption_rate,
            'unit_price': self.unit_price,
            'warnings': list(self.warnings),
            'is_suspicious': self.is_suspicious,
            'is_corrected': self.is_corrected,
            'is_baseline': self.is_baseline,
        }


def _num(value):
    if value is None or value == '':
        return None
    return float(value)


def _day(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        return date.fromisoformat(value[:10])
    return None


def _fmt(value):
    return f"{value:,.1f}".replace(',', ' ')


def analyze_fuel_entry(entry, previous=None, reference_rate=None, reference_price=None,
                       tank_capacity=None, thresholds=DEFAULT_THRESHOLDS, correct_odometer=False):
    """Compute the normalized consumption of one refuel and flag anomalies.

    ``entry`` and ``previous`` are mappings with ``date``, ``km_depart``,
    ``km_arrivee``, ``litres`` and ``montant``. ``previous`` is the fill
    that immediately precedes ``entry`` for the same vehicle.
    """
    km_arrivee = _num(entry.get('km_arrivee'))
    if km_arrivee is None:
        raise ValueError("km_arrivee is required")
    km_depart = _num(entry.get('km_depart'))
    litres = _num(entry.get('litres')) or 0.0
    montant = _num(entry.get('montant'))
    prev_arrivee = _num(previous.get('km_arrivee')) if previous else None

    if km_depart is None:
        if prev_arrivee is None:
            return FuelAnalysis(
                km_depart=km_arrivee, km_arrivee=km_arrivee, distance=0.0,
                raw_consumption=None, consumption_rate=None,
                unit_price=round(montant / litres, 2) if montant and litres > 0 else None,
                is_baseline=True,
            )
        km_depart = prev_arrivee

    warnings = []
    distance = km_arrivee - km_depart
    unit_price = round(montant / litres, 2) if montant and litres > 0 else None

    raw = None
    if distance > 0 and litres > 0:
        raw = round(litres / distance * 100, 2)

    if distance <= 0:
        warnings.append(f"Odometer did not advance ({_fmt(km_depart)} -> {_fmt(km_arrivee)} km)")
    elif distance > thresholds.max_distance:
        warnings.append(f"Distance of {_fmt(distance)} km exceeds {_fmt(thresholds.max_distance)} km between two fills")
    if litres <= 0:
        warnings.append("Refuel volume must be positive")

    if raw is not None:
        if raw > thresholds.max_rate:
            warnings.append(f"Consumption {raw:.1f} L/100 above maximum {thresholds.max_rate:.1f}")
        elif raw < thresholds.min_rate:
            warnings.append(f"Consumption {raw:.1f} L/100 below minimum {thresholds.min_rate:.1f}")
        if reference_rate and raw > reference_rate * (1 + thresholds.reference_tolerance):
            warnings.append(f"Consumption {raw:.1f} L/100 far above vehicle reference {reference_rate:.1f}")

    tank = tank_capacity or thresholds.default_tank
    if tank and litres > tank * (1 + thresholds.tank_margin):
        warnings.append(f"Refuel of {litres:.1f} L exceeds tank capacity of {tank:.0f} L")

    if prev_arrivee is not None:
        if km_depart < prev_arrivee:
            warnings.append(f"Start odometer {_fmt(km_depart)} overlaps previous fill ending at {_fmt(prev_arrivee)}")
        elif km_depart - prev_arrivee > thresholds.gap_tolerance:
            warnings.append(f"{_fmt(km_depart - prev_arrivee)} km unrecorded since previous fill")
        entry_day, prev_day = _day(entry.get('date')), _day(previous.get('date'))
        if entry_day is not None and entry_day == prev_day:
            warnings.append("Second refuel on the same day")

    if unit_price is not None and reference_price:
        if abs(unit_price - reference_price) / reference_price > thresholds.price_tolerance:
            warnings.append(f"Unit price {unit_price:.2f} differs from usual {reference_price:.2f}")

    analysis = FuelAnalysis(
        km_depart=km_depart, km_arrivee=km_arrivee, distance=distance,
        raw_consumption=raw, consumption_rate=raw, unit_price=unit_price,
        warnings=warnings, is_suspicious=bool(warnings),
    )
    if correct_odometer and raw is not None:
        _correct_odometer(analysis, litres, reference_rate, thresholds)
    return analysis


def _correct_odometer(analysis, litres, reference_rate, thresholds):
    raw = analysis.raw_consumption
    if thresholds.min_rate <= raw <= thresholds.max_rate:
        return
    target = reference_rate or min(max(raw, thresholds.min_rate), thresholds.max_rate)
    corrected = round(analysis.km_depart + litres * 100 / target, 1)
    analysis.warnings.append(
        f"Arrival odometer corrected from {_fmt(analysis.km_arrivee)} to {_fmt(corrected)} km"
    )
    analysis.km_arrivee = float(corrected)
    analysis.distance = round(corrected - analysis.km_depart, 1)
    analysis.consumption_rate = round(target, 2)
    analysis.is_corrected = True
    analysis.is_suspicious = True


def reference_rate(history):
    """Median consumption of the trustworthy fills in ``history``."""
    rates = [
        float(h['consumption_rate']) for h in history
        if h.get('consumption_rate') and not h.get('is_suspicious')
        and float(h['consumption_rate']) > 0
    ]
    return round(median(rates), 2) if rates else None


def reference_price(history):
    prices = []
    for h in history:
        litres, montant = _num(h.get('litres')), _num(h.get('montant'))
        if litres and litres > 0 and montant:
            prices.append(montant / litres)
    return round(median(prices), 2) if prices else None


def _sort_key(entry):
    return (_day(entry.get('date')) or date.min, _num(entry.get('km_arrivee')) or 0.0)


def analyze_fuel_series(entries, previous=None, **options):
    """Analyze fills of one vehicle in chronological order.

    Each fill is chained onto the previous one, using the corrected
    arrival odometer when correction rewrote it. Returns ``(entry,
    analysis)`` pairs sorted by date then arrival odometer.
    """
    results = []
    last = previous
    for entry in sorted(entries, key=_sort_key):
        analysis = analyze_fuel_entry(entry, previous=last, **options)
        results.append((entry, analysis))
        last = {'date': entry.get('date'), 'km_arrivee': analysis.km_arrivee}
    return results
