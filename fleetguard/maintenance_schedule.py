"""Mileage-based maintenance due dates."""


def _km(value):
    return float(value) if value not in (None, '') else 0.0


def compute_alerts(vehicles, rules, current_km, last_service_km):
    """Return the (vehicle, rule) pairs that are due soon or overdue.

    ``current_km`` maps vehicle id to its highest known odometer,
    ``last_service_km`` maps ``(vehicle_id, rule_id)`` to the odometer of
    the latest service of that kind. A vehicle never serviced counts
    from 0 km.
    """
    alerts = []
    for vehicle in vehicles:
        odometer = _km(current_km.get(vehicle['id']))
        for rule in rules:
            frequency = _km(rule['frequence_km'])
            if frequency <= 0:
                continue
            warn_before = _km(rule.get('alerte_avant_km'))
            last = _km(last_service_km.get((vehicle['id'], rule['id'])))
            next_due = last + frequency
            remaining = next_due - odometer
            if remaining > warn_before:
                continue
            alerts.append({
                'vehicle_id': vehicle['id'],
                'immatriculation': vehicle.get('immatriculation'),
                'marque': vehicle.get('marque'),
                'rule_id': rule['id'],
                'type_maintenance': rule.get('type_maintenance'),
                'description': rule.get('description'),
                'frequence_km': frequency,
                'dernier_km': last,
                'km_actuel': odometer,
                'prochain_km': next_due,
                'km_restants': remaining,
                'overdue': remaining < 0,
                'alerte_active': True,
            })
    alerts.sort(key=lambda a: (not a['overdue'], a['km_restants']))
    return alerts
