from flask import Flask, request, jsonify, g, send_file
from flask.json.provider import DefaultJSONProvider
from flask_cors import CORS
from functools import wraps
from werkzeug.security import generate_password_hash, check_password_hash
from dotenv import load_dotenv
import mysql.connector
from mysql.connector import Error, IntegrityError
import click
import jwt
import io
import json
import logging
import math
import os
import zipfile
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from openpyxl.utils.exceptions import InvalidFileException

from fleetguard.fuel_engine import (
    FuelThresholds, analyze_fuel_entry, analyze_fuel_series, reference_rate, reference_price,
)
from fleetguard.maintenance_schedule import compute_alerts
from fleetguard.spreadsheet import (
    HeaderNotFoundError, UnsupportedFileError, load_fuel_entries, make_xlsx_bytes, normalize_plate,
)

load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _env_flag(name, default='false'):
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


app = Flask(__name__)
app.config.from_mapping(
    SECRET_KEY=os.getenv('SECRET_KEY', 'fleetguard_dev_secret'),
    JWT_SECRET=os.getenv('JWT_SECRET', os.getenv('SECRET_KEY', 'fleetguard_dev_secret')),
    JWT_EXPIRES_HOURS=int(os.getenv('JWT_EXPIRES_HOURS', '24')),
    FUEL_MIN_RATE=float(os.getenv('FUEL_MIN_RATE', '3.0')),
    FUEL_MAX_RATE=float(os.getenv('FUEL_MAX_RATE', '25.0')),
    FUEL_MAX_DISTANCE=float(os.getenv('FUEL_MAX_DISTANCE', '1200')),
    FUEL_DEFAULT_TANK=float(os.getenv('FUEL_DEFAULT_TANK', '120')),
    FUEL_REFERENCE_TOLERANCE=float(os.getenv('FUEL_REFERENCE_TOLERANCE', '0.5')),
    FUEL_PRICE_TOLERANCE=float(os.getenv('FUEL_PRICE_TOLERANCE', '0.25')),
    FUEL_GAP_TOLERANCE=float(os.getenv('FUEL_GAP_TOLERANCE', '50')),
    FUEL_CORRECT_ODOMETER=_env_flag('FUEL_CORRECT_ODOMETER'),
)
CORS(app, resources={r"/api/*": {"origins": os.getenv('CORS_ORIGINS', '*')}})

# DB Config - read from the environment, defaults match a local MySQL server
DB_CONFIG = {
    'host': os.getenv('DB_HOST', 'localhost'),
    'port': int(os.getenv('DB_PORT', '3306')),
    'database': os.getenv('DB_NAME', 'fleetguard_db'),
    'user': os.getenv('DB_USER', 'root'),
    'password': os.getenv('DB_PASSWORD', ''),
}


class FleetJSONProvider(DefaultJSONProvider):
    """ISO dates and plain floats for MySQL DATE/DECIMAL columns."""

    @staticmethod
    def default(o):
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, timedelta):
            return str(o)
        return DefaultJSONProvider.default(o)


app.json = FleetJSONProvider(app)


class ApiError(Exception):
    def __init__(self, message, status=400, **extra):
        super().__init__(message)
        self.message = message
        self.status = status
        self.extra = extra


def connect_db():
    return mysql.connector.connect(**DB_CONFIG)


def get_db():
    if 'db' not in g:
        try:
            g.db = connect_db()
        except Error as e:
            logger.error("DB connection failed: %s", e)
            raise ApiError('Database connection error. Please try again.', 503)
    return g.db


@app.teardown_appcontext
def close_db(exc):
    conn = g.pop('db', None)
    if conn is not None:
        conn.close()


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password_hash, password):
    return check_password_hash(password_hash, password)


# ==================== ERRORS ====================

@app.errorhandler(ApiError)
def handle_api_error(e):
    payload = {'error': e.message}
    payload.update(e.extra)
    return jsonify(payload), e.status


@app.errorhandler(Error)
def handle_db_error(e):
    conn = g.get('db')
    if conn is not None:
        try:
            conn.rollback()
        except Error:
            logger.warning("Rollback failed after DB error")
    logger.exception("Database error on %s %s", request.method, request.path)
    return jsonify({'error': 'Server error', 'details': str(e)}), 500


@app.errorhandler(404)
def handle_not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def handle_method_not_allowed(e):
    return jsonify({'error': 'Method not allowed'}), 405


def body():
    return request.get_json(silent=True) or {}


def require_fields(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise ApiError(f"Missing required fields: {', '.join(missing)}")


def to_number(value, name, required=False):
    if value in (None, ''):
        if required:
            raise ApiError(f"{name} is required")
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{name} must be a number")


def to_date(value, name, required=False):
    if value in (None, ''):
        if required:
            raise ApiError(f"{name} is required")
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ApiError(f"{name} must be a date (YYYY-MM-DD)")


def fuel_thresholds():
    return FuelThresholds.from_config(app.config)


# ==================== RBAC CONFIG ====================

ROLES = ['admin', 'gestionnaire', 'consultant']

WRITE_PERMS = {
    'vehicles':    ['admin', 'gestionnaire'],
    'drivers':     ['admin', 'gestionnaire'],
    'missions':    ['admin', 'gestionnaire'],
    'trips':       ['admin', 'gestionnaire'],
    'maintenance': ['admin', 'gestionnaire'],
    'fuel':        ['admin', 'gestionnaire'],
    'users':       ['admin'],
}


def create_token(user):
    payload = {
        'id': user['id'],
        'username': user['username'],
        'role': user['role'],
        'exp': datetime.now(timezone.utc) + timedelta(hours=app.config['JWT_EXPIRES_HOURS']),
    }
    return jwt.encode(payload, app.config['JWT_SECRET'], algorithm='HS256')


def decode_token(token):
    return jwt.decode(token, app.config['JWT_SECRET'], algorithms=['HS256'])


def _bearer_token():
    auth = request.headers.get('Authorization', '')
    scheme, _, token = auth.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise ApiError('Access denied. Missing token.', 401)
        try:
            g.user = decode_token(token)
        except jwt.ExpiredSignatureError:
            raise ApiError('Token expired', 401)
        except jwt.InvalidTokenError:
            raise ApiError('Invalid token', 401)
        return f(*args, **kwargs)
    return decorated


def role_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if g.user.get('role') not in roles:
                raise ApiError(f"Access denied. This action requires role: {' or '.join(roles)}", 403)
            return f(*args, **kwargs)
        return decorated
    return decorator


def write_required(module):
    """Decorator that checks if current role can write to the given module."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            role = g.user.get('role')
            if role not in WRITE_PERMS.get(module, []):
                raise ApiError(f'Access denied. Your role ({role}) cannot modify {module}.', 403)
            return f(*args, **kwargs)
        return decorated
    return decorator


# ==================== AUTH ====================

@app.route('/api/auth/register', methods=['POST'])
def register():
    data = body()
    username = (data.get('username') or '').strip()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    role = data.get('role') or 'consultant'

    if not username or not email or not password:
        raise ApiError('All fields are required.')
    if len(password) < 6:
        raise ApiError('Password must be at least 6 characters.')
    if role not in ROLES:
        raise ApiError(f"Unknown role: {role}")

    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("SELECT COUNT(*) AS cnt FROM users")
    if cursor.fetchone()['cnt'] > 0:
        # Only the very first account may register itself
        token = _bearer_token()
        try:
            claims = decode_token(token) if token else None
        except jwt.InvalidTokenError:
            claims = None
        if not claims or claims.get('role') not in WRITE_PERMS['users']:
            raise ApiError('Only an administrator can create accounts.', 403)

    cursor.execute("SELECT id FROM users WHERE username=%s OR email=%s", (username, email))
    if cursor.fetchone():
        raise ApiError('An account with this username or email already exists.', 409)

    cursor.execute(
        "INSERT INTO users (username, email, password_hash, role) VALUES (%s, %s, %s, %s)",
        (username, email, hash_password(password), role)
    )
    conn.commit()
    user = {'id': cursor.lastrowid, 'username': username, 'email': email, 'role': role}
    logger.info("User %s created with role %s", username, role)
    return jsonify({'message': 'Account created successfully', 'user': user}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if not username or not password:
        raise ApiError('Username and password are required.')

    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("SELECT * FROM users WHERE username=%s", (username,))
    user = cursor.fetchone()
    if not user or not verify_password(user['password_hash'], password):
        logger.warning("Failed login for %s", username)
        raise ApiError('Invalid credentials', 401)

    cursor.execute("UPDATE users SET last_login=NOW() WHERE id=%s", (user['id'],))
    conn.commit()
    logger.info("User %s logged in", username)
    return jsonify({
        'message': 'Login successful',
        'token': create_token(user),
        'user': {
            'id': user['id'],
            'username': user['username'],
            'email': user['email'],
            'role': user['role'],
        },
    })


@app.route('/api/auth/me')
@login_required
def me():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute(
        "SELECT id, username, email, role, created_at, last_login FROM users WHERE id=%s",
        (g.user['id'],)
    )
    user = cursor.fetchone()
    if not user:
        raise ApiError('User not found', 404)
    return jsonify({'user': user})


# ==================== VEHICLES ====================

VEHICLE_STATUSES = ['Actif', 'Inactif', 'En maintenance']
VEHICLE_FIELDS = ['immatriculation', 'marque', 'type', 'status', 'reservoir_litres', 'conso_reference']


def _vehicle_values(data):
    values = {}
    for field in VEHICLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == 'immatriculation':
            value = normalize_plate(value) if value else ''
            if not value:
                raise ApiError('immatriculation is required')
        elif field == 'status' and value not in VEHICLE_STATUSES:
            raise ApiError(f"status must be one of: {', '.join(VEHICLE_STATUSES)}")
        elif field in ('reservoir_litres', 'conso_reference'):
            value = to_number(value, field)
        values[field] = value
    return values


@app.route('/api/vehicles')
@login_required
def vehicles():
    cursor = get_db().cursor(dictionary=True)
    type_f = request.args.get('type', '')
    status_f = request.args.get('status', '')
    query = "SELECT * FROM vehicles WHERE 1=1"
    params = []
    if type_f:
        query += " AND type=%s"; params.append(type_f)
    if status_f:
        query += " AND status=%s"; params.append(status_f)
    query += " ORDER BY id ASC"
    cursor.execute(query, params)
    return jsonify(cursor.fetchall())


@app.route('/api/vehicles/<int:vid>')
@login_required
def vehicle_detail(vid):
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("SELECT * FROM vehicles WHERE id=%s", (vid,))
    info = cursor.fetchone()
    if not info:
        raise ApiError('Vehicle not found', 404)
    # last five fills for the history panel
    cursor.execute(
        "SELECT * FROM fuel_logs WHERE vehicle_id=%s AND is_deleted=FALSE ORDER BY date DESC, km_arrivee DESC LIMIT 5",
        (vid,)
    )
    return jsonify({'info': info, 'history': cursor.fetchall()})


@app.route('/api/vehicles', methods=['POST'])
@login_required
@write_required('vehicles')
def add_vehicle():
    data = body()
    require_fields(data, 'immatriculation')
    values = _vehicle_values(data)
    values.setdefault('status', 'Actif')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    columns = list(values)
    try:
        cursor.execute(
            f"INSERT INTO vehicles ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))})",
            [values[c] for c in columns]
        )
    except IntegrityError:
        conn.rollback()
        raise ApiError(f"Vehicle {values['immatriculation']} already exists", 409)
    conn.commit()
    cursor.execute("SELECT * FROM vehicles WHERE id=%s", (cursor.lastrowid,))
    return jsonify(cursor.fetchone()), 201


@app.route('/api/vehicles/<int:vid>', methods=['PUT'])
@login_required
@write_required('vehicles')
def edit_vehicle(vid):
    values = _vehicle_values(body())
    if not values:
        raise ApiError('Nothing to update')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    assignments = ', '.join(f"{c}=%s" for c in values)
    try:
        cursor.execute(f"UPDATE vehicles SET {assignments} WHERE id=%s", list(values.values()) + [vid])
    except IntegrityError:
        conn.rollback()
        raise ApiError(f"Vehicle {values.get('immatriculation')} already exists", 409)
    conn.commit()
    cursor.execute("SELECT * FROM vehicles WHERE id=%s", (vid,))
    vehicle = cursor.fetchone()
    if not vehicle:
        raise ApiError('Vehicle not found', 404)
    return jsonify(vehicle)


@app.route('/api/vehicles/<int:vid>/toggle', methods=['POST'])
@login_required
@write_required('vehicles')
def toggle_vehicle(vid):
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("SELECT status FROM vehicles WHERE id=%s", (vid,))
    v = cursor.fetchone()
    if not v:
        raise ApiError('Vehicle not found', 404)
    new_status = 'Inactif' if v['status'] == 'Actif' else 'Actif'
    cursor.execute("UPDATE vehicles SET status=%s WHERE id=%s", (new_status, vid))
    conn.commit()
    return jsonify({'id': vid, 'status': new_status})


@app.route('/api/vehicles/<int:vid>', methods=['DELETE'])
@login_required
@write_required('vehicles')
def delete_vehicle(vid):
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute("DELETE FROM vehicles WHERE id=%s", (vid,))
    if cursor.rowcount == 0:
        raise ApiError('Vehicle not found', 404)
    conn.commit()
    return jsonify({'message': 'Vehicle deleted.'})


# ==================== DRIVERS ====================

DRIVER_FIELDS = ['nom', 'telephone', 'status']


@app.route('/api/drivers')
@login_required
def drivers():
    cursor = get_db().cursor(dictionary=True)
    # subqueries keep missions and fuel logs from multiplying each other
    cursor.execute("""
        SELECT d.*,
               (SELECT COUNT(*) FROM missions m WHERE m.driver_id = d.id) AS total_missions,
               COALESCE((SELECT AVG(f.consumption_rate) FROM fuel_logs f
                         WHERE f.driver_id = d.id AND f.is_deleted = FALSE), 0) AS avg_conso_score
        FROM drivers d
        ORDER BY d.nom ASC
    """)
    return jsonify(cursor.fetchall())


@app.route('/api/drivers', methods=['POST'])
@login_required
@write_required('drivers')
def add_driver():
    data = body()
    require_fields(data, 'nom')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute(
        "INSERT INTO drivers (nom, telephone, status) VALUES (%s, %s, %s)",
        (data['nom'].strip(), data.get('telephone', ''), data.get('status') or 'Disponible')
    )
    conn.commit()
    cursor.execute("SELECT * FROM drivers WHERE id=%s", (cursor.lastrowid,))
    return jsonify(cursor.fetchone()), 201


@app.route('/api/drivers/<int:did>', methods=['PUT'])
@login_required
@write_required('drivers')
def edit_driver(did):
    data = body()
    values = {f: data[f] for f in DRIVER_FIELDS if f in data}
    if not values:
        raise ApiError('Nothing to update')
    if 'nom' in values and not str(values['nom']).strip():
        raise ApiError('nom is required')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    assignments = ', '.join(f"{c}=%s" for c in values)
    cursor.execute(f"UPDATE drivers SET {assignments} WHERE id=%s", list(values.values()) + [did])
    conn.commit()
    cursor.execute("SELECT * FROM drivers WHERE id=%s", (did,))
    driver = cursor.fetchone()
    if not driver:
        raise ApiError('Driver not found', 404)
    return jsonify(driver)


@app.route('/api/drivers/<int:did>', methods=['DELETE'])
@login_required
@write_required('drivers')
def delete_driver(did):
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute("DELETE FROM drivers WHERE id=%s", (did,))
    if cursor.rowcount == 0:
        raise ApiError('Driver not found', 404)
    conn.commit()
    return jsonify({'message': 'Driver removed.'})


# ==================== MISSIONS ====================

@app.route('/api/missions')
@login_required
def missions():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("""SELECT m.*, v.immatriculation, d.nom AS chauffeur_nom
                     FROM missions m
                     JOIN vehicles v ON m.vehicle_id = v.id
                     LEFT JOIN drivers d ON m.driver_id = d.id
                     ORDER BY m.date_debut DESC""")
    return jsonify(cursor.fetchall())


@app.route('/api/missions', methods=['POST'])
@login_required
@write_required('missions')
def add_mission():
    data = body()
    require_fields(data, 'vehicle_id', 'date_debut')
    start = to_date(data['date_debut'], 'date_debut', required=True)
    end = to_date(data.get('date_fin'), 'date_fin')
    if end and end < start:
        raise ApiError('date_fin cannot be before date_debut')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("""INSERT INTO missions (vehicle_id, driver_id, date_debut, date_fin, description, destination)
                     VALUES (%s, %s, %s, %s, %s, %s)""",
        (data['vehicle_id'], data.get('driver_id') or None, start, end,
         data.get('description', ''), data.get('destination', '')))
    conn.commit()
    cursor.execute("SELECT * FROM missions WHERE id=%s", (cursor.lastrowid,))
    return jsonify(cursor.fetchone()), 201


# ==================== TRIPS (LOGBOOK) ====================

TRIP_EDITABLE_FIELDS = ['date', 'heure_depart', 'km_depart', 'lieu_depart',
                        'lieu_arrivee', 'heure_arrivee', 'km_arrivee', 'motif']


@app.route('/api/trips/<vehicle_id>')
@login_required
def logbook(vehicle_id):
    if not vehicle_id.isdigit():
        raise ApiError('Invalid vehicle id.')
    vid = int(vehicle_id)
    start = request.args.get('startDate')
    end = request.args.get('endDate')
    deleted = request.args.get('deleted') == 'true'

    cursor = get_db().cursor(dictionary=True)
    cursor.execute("SELECT * FROM vehicles WHERE id=%s", (vid,))
    vehicle = cursor.fetchone()
    if not vehicle:
        raise ApiError('Vehicle not found.', 404)

    trips_query = "SELECT t.* FROM trip_logs t WHERE t.vehicle_id=%s AND t.is_deleted=%s"
    trips_params = [vid, deleted]
    fuels_query = "SELECT f.* FROM fuel_logs f WHERE f.vehicle_id=%s AND f.is_deleted=FALSE"
    fuels_params = [vid]
    if start and end:
        trips_query += " AND t.date BETWEEN %s AND %s"; trips_params += [start, end]
        fuels_query += " AND f.date BETWEEN %s AND %s"; fuels_params += [start, end]
    cursor.execute(trips_query + " ORDER BY t.date DESC, t.id DESC", trips_params)
    trips = cursor.fetchall()
    cursor.execute(fuels_query + " ORDER BY f.date DESC", fuels_params)
    fuels = cursor.fetchall()
    return jsonify({'vehicle': vehicle, 'trips': trips, 'fuels': fuels})


@app.route('/api/trips', methods=['POST'])
@login_required
@write_required('trips')
def add_trip():
    data = body()
    require_fields(data, 'vehicle_id', 'date')
    km_depart = to_number(data.get('km_depart'), 'km_depart')
    km_arrivee = to_number(data.get('km_arrivee'), 'km_arrivee')
    if km_depart is not None and km_arrivee is not None and km_arrivee < km_depart:
        raise ApiError('km_arrivee cannot be lower than km_depart')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("""INSERT INTO trip_logs (vehicle_id, date, heure_depart, km_depart, lieu_depart,
                                             lieu_arrivee, heure_arrivee, km_arrivee, motif)
                     VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (data['vehicle_id'], to_date(data['date'], 'date', required=True), data.get('heure_depart'),
         km_depart, data.get('lieu_depart'), data.get('lieu_arrivee'), data.get('heure_arrivee'),
         km_arrivee, data.get('motif')))
    conn.commit()
    cursor.execute("SELECT * FROM trip_logs WHERE id=%s", (cursor.lastrowid,))
    return jsonify(cursor.fetchone()), 201


@app.route('/api/trips/<int:tid>', methods=['PUT'])
@login_required
@write_required('trips')
def edit_trip(tid):
    data = body()
    field = data.get('field')
    if field not in TRIP_EDITABLE_FIELDS:
        raise ApiError('Field not editable')
    value = data.get('value')
    if field.startswith('km_'):
        value = to_number(value, field)
    elif field == 'date':
        value = to_date(value, 'date', required=True)

    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    # field comes from the whitelist above
    cursor.execute(f"UPDATE trip_logs SET {field}=%s WHERE id=%s", (value, tid))
    conn.commit()
    cursor.execute("SELECT * FROM trip_logs WHERE id=%s", (tid,))
    trip = cursor.fetchone()
    if not trip:
        raise ApiError('Trip not found', 404)
    return jsonify(trip)


def _set_trip_deleted(tid, deleted):
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute("UPDATE trip_logs SET is_deleted=%s WHERE id=%s", (deleted, tid))
    conn.commit()


@app.route('/api/trips/trash/<int:tid>', methods=['PUT'])
@login_required
@write_required('trips')
def trash_trip(tid):
    _set_trip_deleted(tid, True)
    return jsonify({'message': 'Moved to trash'})


@app.route('/api/trips/restore/<int:tid>', methods=['PUT'])
@login_required
@write_required('trips')
def restore_trip(tid):
    _set_trip_deleted(tid, False)
    return jsonify({'message': 'Restored'})


@app.route('/api/trips/<int:tid>', methods=['DELETE'])
@login_required
@write_required('trips')
def delete_trip(tid):
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute("DELETE FROM trip_logs WHERE id=%s", (tid,))
    conn.commit()
    return jsonify({'message': 'Permanently deleted'})


# ==================== MAINTENANCE ====================

@app.route('/api/maintenance/alerts')
@login_required
def maintenance_alerts():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("SELECT id, immatriculation, marque FROM vehicles WHERE status='Actif'")
    active = cursor.fetchall()
    cursor.execute("SELECT * FROM maintenance_rules ORDER BY id ASC")
    rules = cursor.fetchall()
    cursor.execute("""
        SELECT vehicle_id, MAX(km) AS km FROM (
            SELECT vehicle_id, km_arrivee AS km FROM fuel_logs WHERE is_deleted = FALSE
            UNION ALL
            SELECT vehicle_id, km_arrivee AS km FROM trip_logs WHERE is_deleted = FALSE
        ) AS readings
        GROUP BY vehicle_id
    """)
    current_km = {r['vehicle_id']: r['km'] for r in cursor.fetchall()}
    cursor.execute("""SELECT vehicle_id, rule_id, MAX(km_effectue) AS km
                     FROM maintenance_logs GROUP BY vehicle_id, rule_id""")
    last_service = {(r['vehicle_id'], r['rule_id']): r['km'] for r in cursor.fetchall()}
    return jsonify(compute_alerts(active, rules, current_km, last_service))


@app.route('/api/maintenance/rules')
@login_required
def maintenance_rules():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("SELECT * FROM maintenance_rules ORDER BY id ASC")
    return jsonify(cursor.fetchall())


@app.route('/api/maintenance/rules', methods=['POST'])
@login_required
@write_required('maintenance')
def add_maintenance_rule():
    data = body()
    require_fields(data, 'type_maintenance', 'frequence_km')
    frequency = to_number(data['frequence_km'], 'frequence_km', required=True)
    warn_before = to_number(data.get('alerte_avant_km'), 'alerte_avant_km')
    if frequency <= 0:
        raise ApiError('frequence_km must be positive')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("""INSERT INTO maintenance_rules (type_maintenance, frequence_km, alerte_avant_km, description)
                     VALUES (%s, %s, %s, %s)""",
        (data['type_maintenance'], int(frequency),
         int(warn_before) if warn_before is not None else 1000, data.get('description', '')))
    conn.commit()
    cursor.execute("SELECT * FROM maintenance_rules WHERE id=%s", (cursor.lastrowid,))
    return jsonify(cursor.fetchone()), 201


@app.route('/api/maintenance/log', methods=['POST'])
@login_required
@write_required('maintenance')
def add_maintenance_log():
    data = body()
    require_fields(data, 'vehicle_id', 'rule_id', 'km_effectue', 'date_maintenance')
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("""INSERT INTO maintenance_logs (vehicle_id, rule_id, km_effectue, date_maintenance, notes, cout)
                     VALUES (%s, %s, %s, %s, %s, %s)""",
        (data['vehicle_id'], data['rule_id'],
         to_number(data['km_effectue'], 'km_effectue', required=True),
         to_date(data['date_maintenance'], 'date_maintenance', required=True),
         data.get('notes', ''), to_number(data.get('cout'), 'cout') or 0))
    conn.commit()
    cursor.execute("SELECT * FROM maintenance_logs WHERE id=%s", (cursor.lastrowid,))
    return jsonify(cursor.fetchone()), 201


@app.route('/api/maintenance/history/<int:vid>')
@login_required
def maintenance_history(vid):
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("""SELECT ml.*, mr.type_maintenance, mr.description
                     FROM maintenance_logs ml
                     JOIN maintenance_rules mr ON ml.rule_id = mr.id
                     WHERE ml.vehicle_id=%s
                     ORDER BY ml.date_maintenance DESC""", (vid,))
    return jsonify(cursor.fetchall())


# ==================== FUEL ====================

FUEL_SORT_COLUMNS = {
    'date': 'f.date',
    'montant': 'f.montant',
    'litres': 'f.litres',
    'consumption_rate': 'f.consumption_rate',
    'immatriculation': 'v.immatriculation',
    'km_arrivee': 'f.km_arrivee',
}

FUEL_HISTORY_DEPTH = 20


def _fuel_context(cursor, vehicle, before):
    """Previous fill and reference values for a vehicle, as of ``before``."""
    cursor.execute("""SELECT date, km_depart, km_arrivee, litres, montant, consumption_rate, is_suspicious
                     FROM fuel_logs
                     WHERE vehicle_id=%s AND is_deleted=FALSE AND date<=%s
                     ORDER BY date DESC, km_arrivee DESC
                     LIMIT %s""", (vehicle['id'], before, FUEL_HISTORY_DEPTH))
    history = cursor.fetchall()
    return {
        'previous': history[0] if history else None,
        'reference_rate': float(vehicle['conso_reference']) if vehicle.get('conso_reference') else reference_rate(history),
        'reference_price': reference_price(history),
        'tank_capacity': float(vehicle['reservoir_litres']) if vehicle.get('reservoir_litres') else None,
    }


def _insert_fuel_log(cursor, vehicle_id, driver_id, entry, analysis, source):
    cursor.execute("""INSERT INTO fuel_logs (vehicle_id, driver_id, date, km_depart, km_arrivee, litres, montant,
                                             distance_daily, raw_consumption, consumption_rate,
                                             is_suspicious, is_corrected, warnings, source)
                     VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (vehicle_id, driver_id, entry['date'], analysis.km_depart, analysis.km_arrivee,
         entry['litres'], entry.get('montant') or 0, max(analysis.distance, 0),
         analysis.raw_consumption, analysis.consumption_rate,
         analysis.is_suspicious, analysis.is_corrected, json.dumps(analysis.warnings), source))
    return cursor.lastrowid


@app.route('/api/fuel')
@login_required
def fuel_logs():
    page = max(request.args.get('page', 1, type=int), 1)
    limit = min(max(request.args.get('limit', 10, type=int), 1), 100)
    search = request.args.get('search', '').strip()
    sort_column = FUEL_SORT_COLUMNS.get(request.args.get('sortBy', 'date'), 'f.date')
    sort_order = 'ASC' if request.args.get('sortOrder', 'desc').lower() == 'asc' else 'DESC'

    where = "f.is_deleted = FALSE"
    params = []
    if search:
        where += " AND (v.immatriculation LIKE %s OR d.nom LIKE %s)"
        params += [f"%{search}%", f"%{search}%"]
    joins = """FROM fuel_logs f
               JOIN vehicles v ON f.vehicle_id = v.id
               LEFT JOIN drivers d ON f.driver_id = d.id"""

    cursor = get_db().cursor(dictionary=True)
    cursor.execute(f"SELECT COUNT(*) AS total {joins} WHERE {where}", params)
    total = cursor.fetchone()['total']
    cursor.execute(f"""SELECT f.*, v.immatriculation, d.nom AS chauffeur_nom {joins}
                      WHERE {where}
                      ORDER BY {sort_column} {sort_order}, f.id DESC
                      LIMIT %s OFFSET %s""", params + [limit, (page - 1) * limit])
    return jsonify({
        'data': cursor.fetchall(),
        'meta': {
            'total': total,
            'page': page,
            'limit': limit,
            'totalPages': math.ceil(total / limit) if total else 0,
        },
    })


@app.route('/api/fuel', methods=['POST'])
@login_required
@write_required('fuel')
def add_fuel_log():
    data = body()
    require_fields(data, 'vehicle_id', 'date', 'km_arrivee', 'litres')
    entry = {
        'date': to_date(data['date'], 'date', required=True),
        'km_depart': to_number(data.get('km_depart'), 'km_depart'),
        'km_arrivee': to_number(data['km_arrivee'], 'km_arrivee', required=True),
        'litres': to_number(data['litres'], 'litres', required=True),
        'montant': to_number(data.get('montant'), 'montant') or 0,
    }
    if entry['litres'] <= 0:
        raise ApiError('litres must be positive')

    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("SELECT id, reservoir_litres, conso_reference FROM vehicles WHERE id=%s", (data['vehicle_id'],))
    vehicle = cursor.fetchone()
    if not vehicle:
        raise ApiError('Vehicle not found', 404)

    context = _fuel_context(cursor, vehicle, entry['date'])
    analysis = analyze_fuel_entry(
        entry,
        thresholds=fuel_thresholds(),
        correct_odometer=app.config['FUEL_CORRECT_ODOMETER'],
        **context,
    )
    log_id = _insert_fuel_log(cursor, vehicle['id'], data.get('driver_id') or None, entry, analysis, 'manual')
    conn.commit()
    if analysis.is_suspicious:
        logger.warning("Fuel log %s for vehicle %s flagged: %s", log_id, vehicle['id'], '; '.join(analysis.warnings))

    cursor.execute("SELECT * FROM fuel_logs WHERE id=%s", (log_id,))
    log = cursor.fetchone()
    return jsonify({'log': log, 'analysis': analysis.as_dict()}), 201


@app.route('/api/fuel/<int:fid>', methods=['DELETE'])
@login_required
@write_required('fuel')
def delete_fuel_log(fid):
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute("DELETE FROM fuel_logs WHERE id=%s", (fid,))
    if cursor.rowcount == 0:
        raise ApiError('Fuel log not found', 404)
    conn.commit()
    return jsonify({'message': 'Deleted successfully'})


@app.route('/api/fuel/analytics/dashboard')
@login_required
def fuel_dashboard():
    start = to_date(request.args.get('start'), 'start')
    end = to_date(request.args.get('end'), 'end')
    if start and end:
        where, params = "is_deleted = FALSE AND date BETWEEN %s AND %s", [start, end]
        kpi_where, kpi_params = where, params
    else:
        # six latest months for the charts, whole history for the KPI cards
        where, params = "is_deleted = FALSE AND date > %s", [date.today() - timedelta(days=183)]
        kpi_where, kpi_params = "is_deleted = %s", [False]

    cursor = get_db().cursor(dictionary=True)
    cursor.execute(f"""SELECT DATE_FORMAT(date, '%Y-%m') AS mois,
                              SUM(montant) AS total_cout,
                              AVG(consumption_rate) AS avg_conso
                       FROM fuel_logs
                       WHERE {where}
                       GROUP BY mois
                       ORDER BY mois ASC""", params)
    charts = cursor.fetchall()
    cursor.execute(f"""SELECT COALESCE(SUM(montant), 0) AS total_depense,
                              AVG(consumption_rate) AS conso_globale,
                              COALESCE(SUM(distance_daily), 0) AS km_total,
                              COALESCE(SUM(is_suspicious AND NOT validated), 0) AS total_anomalies
                       FROM fuel_logs
                       WHERE {kpi_where}""", kpi_params)
    return jsonify({'charts': charts, 'kpis': cursor.fetchone()})


@app.route('/api/fuel/stats/monthly')
@login_required
def fuel_monthly_stats():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("""SELECT DATE_FORMAT(date, '%Y-%m') AS mois,
                             SUM(montant) AS total_cout,
                             SUM(litres) AS total_litres,
                             ROUND(AVG(consumption_rate), 2) AS consommation_moyenne
                      FROM fuel_logs
                      WHERE is_deleted = %s
                      GROUP BY mois
                      ORDER BY mois DESC
                      LIMIT 12""", (False,))
    return jsonify(cursor.fetchall())


@app.route('/api/fuel/stats/vehicles')
@login_required
def fuel_vehicle_stats():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("""
        SELECT v.id, v.immatriculation, v.marque,
               COALESCE(SUM(f.litres), 0) AS total_litres,
               COALESCE(SUM(f.montant), 0) AS total_fuel_cost,
               MIN(f.km_depart) AS min_odometer,
               MAX(f.km_arrivee) AS max_odometer,
               COUNT(f.id) AS log_count,
               COALESCE((SELECT SUM(cout) FROM maintenance_logs m WHERE m.vehicle_id = v.id), 0) AS maint_cost
        FROM vehicles v
        LEFT JOIN fuel_logs f ON f.vehicle_id = v.id AND f.is_deleted = FALSE
        GROUP BY v.id, v.immatriculation, v.marque
        ORDER BY v.immatriculation
    """)
    rows = cursor.fetchall()
    for row in rows:
        total_litres = float(row['total_litres'] or 0)
        row['total_cost'] = float(row['total_fuel_cost']) + float(row['maint_cost'])
        min_odo, max_odo = row['min_odometer'], row['max_odometer']
        if total_litres <= 0 or min_odo is None or max_odo is None or max_odo <= min_odo:
            row['km_driven'] = 0
            row['km_per_litre'] = None
            row['litres_per_100km'] = None
            continue
        km = float(max_odo) - float(min_odo)
        row['km_driven'] = round(km, 1)
        row['km_per_litre'] = round(km / total_litres, 2)
        row['litres_per_100km'] = round(total_litres / km * 100, 2)
    return jsonify(rows)


@app.route('/api/fuel/frauds')
@login_required
def fuel_frauds():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("""SELECT f.*, v.immatriculation, d.nom AS chauffeur_nom
                     FROM fuel_logs f
                     JOIN vehicles v ON f.vehicle_id = v.id
                     LEFT JOIN drivers d ON f.driver_id = d.id
                     WHERE f.is_suspicious = TRUE AND f.validated = FALSE AND f.is_deleted = FALSE
                     ORDER BY f.date DESC, f.id DESC""")
    return jsonify(cursor.fetchall())


@app.route('/api/fuel/frauds/<int:fid>/validate', methods=['PUT'])
@login_required
@role_required('admin')
def validate_fraud(fid):
    action = body().get('action')
    if action not in ('approve', 'reject'):
        raise ApiError("action must be 'approve' or 'reject'")
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("SELECT id FROM fuel_logs WHERE id=%s AND is_deleted=FALSE", (fid,))
    if not cursor.fetchone():
        raise ApiError('Fuel log not found', 404)
    if action == 'approve':
        cursor.execute("UPDATE fuel_logs SET validated=TRUE WHERE id=%s", (fid,))
        message = 'Alert dismissed as false positive'
    else:
        cursor.execute("DELETE FROM fuel_logs WHERE id=%s", (fid,))
        message = 'Fraud confirmed, fuel log deleted'
    conn.commit()
    logger.info("Fraud alert %s %sd by %s", fid, action, g.user.get('username'))
    return jsonify({'message': message, 'id': fid, 'action': action})


@app.route('/api/fuel/recompute/<int:vid>', methods=['POST'])
@login_required
@write_required('fuel')
def recompute_fuel(vid):
    conn = get_db()
    cursor = conn.cursor(dictionary=True)
    cursor.execute("SELECT id, reservoir_litres, conso_reference FROM vehicles WHERE id=%s", (vid,))
    vehicle = cursor.fetchone()
    if not vehicle:
        raise ApiError('Vehicle not found', 404)
    cursor.execute("""SELECT id, date, km_depart, km_arrivee, litres, montant, consumption_rate, is_suspicious
                     FROM fuel_logs WHERE vehicle_id=%s AND is_deleted=FALSE
                     ORDER BY date ASC, km_arrivee ASC""", (vid,))
    history = cursor.fetchall()
    # a first fill saved without km_depart was stored with km_depart = km_arrivee
    if history and history[0]['km_depart'] == history[0]['km_arrivee']:
        history[0] = dict(history[0], km_depart=None)
    ref_rate = float(vehicle['conso_reference']) if vehicle.get('conso_reference') else reference_rate(history)
    results = analyze_fuel_series(
        history,
        reference_rate=ref_rate,
        reference_price=reference_price(history),
        tank_capacity=float(vehicle['reservoir_litres']) if vehicle.get('reservoir_litres') else None,
        thresholds=fuel_thresholds(),
    )
    suspicious = 0
    for entry, analysis in results:
        cursor.execute("""UPDATE fuel_logs SET distance_daily=%s, raw_consumption=%s, consumption_rate=%s,
                                              is_suspicious=%s, warnings=%s
                         WHERE id=%s""",
            (max(analysis.distance, 0), analysis.raw_consumption, analysis.consumption_rate,
             analysis.is_suspicious, json.dumps(analysis.warnings), entry['id']))
        suspicious += analysis.is_suspicious
    conn.commit()
    logger.info("Recomputed %d fuel logs for vehicle %s (%d suspicious)", len(results), vid, suspicious)
    return jsonify({'vehicle_id': vid, 'updated': len(results), 'suspicious': suspicious})


EXPORT_HEADERS = ['Date', 'Immatriculation', 'Chauffeur', 'Km départ', 'Km arrivée', 'Litres',
                  'Montant (Ar)', 'Distance (km)', 'Conso (L/100)', 'Suspect', 'Alertes']


@app.route('/api/fuel/data/export')
@login_required
def export_fuel():
    cursor = get_db().cursor(dictionary=True)
    cursor.execute("""SELECT f.date, v.immatriculation, d.nom AS chauffeur_nom, f.km_depart, f.km_arrivee,
                             f.litres, f.montant, f.distance_daily, f.consumption_rate, f.is_suspicious, f.warnings
                      FROM fuel_logs f
                      JOIN vehicles v ON f.vehicle_id = v.id
                      LEFT JOIN drivers d ON f.driver_id = d.id
                      WHERE f.is_deleted = FALSE
                      ORDER BY f.date DESC, v.immatriculation""")
    rows = []
    for r in cursor.fetchall():
        warnings = json.loads(r['warnings']) if r.get('warnings') else []
        rows.append([
            r['date'], r['immatriculation'], r['chauffeur_nom'],
            _float(r['km_depart']), _float(r['km_arrivee']), _float(r['litres']), _float(r['montant']),
            _float(r['distance_daily']), _float(r['consumption_rate']),
            'Oui' if r['is_suspicious'] else 'Non', ' | '.join(warnings),
        ])
    content = make_xlsx_bytes('Carburant', EXPORT_HEADERS, rows)
    return send_file(
        io.BytesIO(content),
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        as_attachment=True,
        download_name=f"Export_Carburant_{date.today().isoformat()}.xlsx",
    )


def _float(value):
    return float(value) if value is not None else None


def import_fuel_entries(conn, entries):
    """Persist parsed spreadsheet rows in one transaction.

    Unknown plates and driver names are created, rows already stored
    (same vehicle, date, arrival odometer and volume) are skipped, and the
    engine runs per vehicle in date order chained onto the stored history.
    """
    cursor = conn.cursor(dictionary=True)
    thresholds = fuel_thresholds()
    summary = {'imported': 0, 'skipped': 0, 'suspicious': 0, 'created_vehicles': 0, 'created_drivers': 0}
    try:
        cursor.execute("SELECT id, immatriculation, reservoir_litres, conso_reference FROM vehicles")
        vehicles_by_plate = {normalize_plate(v['immatriculation']): v for v in cursor.fetchall()}
        cursor.execute("SELECT id, nom FROM drivers")
        drivers_by_name = {d['nom'].strip().lower(): d['id'] for d in cursor.fetchall()}

        groups = {}
        for entry in entries:
            groups.setdefault(entry['immatriculation'], []).append(entry)

        for plate, group in groups.items():
            vehicle = vehicles_by_plate.get(plate)
            if vehicle is None:
                cursor.execute("INSERT INTO vehicles (immatriculation, status) VALUES (%s, 'Actif')", (plate,))
                vehicle = {'id': cursor.lastrowid, 'immatriculation': plate,
                           'reservoir_litres': None, 'conso_reference': None}
                vehicles_by_plate[plate] = vehicle
                summary['created_vehicles'] += 1

            cursor.execute("""SELECT date, km_arrivee, litres FROM fuel_logs
                             WHERE vehicle_id=%s AND is_deleted=FALSE""", (vehicle['id'],))
            existing = {_dedupe_key(r) for r in cursor.fetchall()}
            fresh = []
            for entry in group:
                key = _dedupe_key(entry)
                if key in existing:
                    summary['skipped'] += 1
                    continue
                existing.add(key)
                fresh.append(entry)
            if not fresh:
                continue

            context = _fuel_context(cursor, vehicle, min(e['date'] for e in fresh))
            for entry, analysis in analyze_fuel_series(
                fresh,
                thresholds=thresholds,
                correct_odometer=app.config['FUEL_CORRECT_ODOMETER'],
                **context,
            ):
                driver_id = None
                if entry.get('chauffeur'):
                    name = entry['chauffeur'].strip()
                    driver_id = drivers_by_name.get(name.lower())
                    if driver_id is None:
                        cursor.execute("INSERT INTO drivers (nom, status) VALUES (%s, 'Disponible')", (name,))
                        driver_id = cursor.lastrowid
                        drivers_by_name[name.lower()] = driver_id
                        summary['created_drivers'] += 1
                _insert_fuel_log(cursor, vehicle['id'], driver_id, entry, analysis, 'import')
                summary['imported'] += 1
                summary['suspicious'] += analysis.is_suspicious
        conn.commit()
    except Error:
        conn.rollback()
        raise
    return summary


def _dedupe_key(row):
    day = row['date']
    day = day.isoformat() if hasattr(day, 'isoformat') else str(day)[:10]
    return (day, round(float(row['km_arrivee']), 1), round(float(row['litres']), 2))


@app.route('/api/fuel/data/import', methods=['POST'])
@login_required
@write_required('fuel')
def import_fuel():
    upload = request.files.get('file')
    if not upload or not upload.filename:
        raise ApiError('No file uploaded')
    try:
        entries, errors = load_fuel_entries(io.BytesIO(upload.read()), upload.filename)
    except (HeaderNotFoundError, UnsupportedFileError) as e:
        raise ApiError(str(e))
    except (InvalidFileException, zipfile.BadZipFile):
        raise ApiError('The file is not a valid spreadsheet')
    if not entries:
        raise ApiError('No valid fuel rows found', errors=errors)

    summary = import_fuel_entries(get_db(), entries)
    summary['errors'] = errors
    summary['message'] = (
        f"{summary['imported']} rows imported, {summary['skipped']} duplicates skipped, "
        f"{summary['suspicious']} flagged, {len(errors)} rejected"
    )
    logger.info("Import of %s by %s: %s", upload.filename, g.user.get('username'), summary['message'])
    return jsonify(summary)


# ==================== CLI ====================

SCHEMA_PATH = Path(__file__).with_name('schema.sql')


@app.cli.command('init-db')
def init_db_command():
    """Create the tables."""
    conn = connect_db()
    try:
        cursor = conn.cursor()
        for statement in SCHEMA_PATH.read_text(encoding='utf-8').split(';'):
            if statement.strip():
                cursor.execute(statement)
        conn.commit()
    finally:
        conn.close()
    click.echo('Initialized the database.')


@app.cli.command('import-fuel')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
def import_fuel_command(path):
    """Import a fuel spreadsheet from disk."""
    with open(path, 'rb') as fh:
        entries, errors = load_fuel_entries(io.BytesIO(fh.read()), path)
    for error in errors:
        click.echo(f"row {error['row']}: {error['error']}", err=True)
    if not entries:
        raise click.ClickException('No valid fuel rows found')
    conn = connect_db()
    try:
        summary = import_fuel_entries(conn, entries)
    finally:
        conn.close()
    click.echo(
        f"{summary['imported']} imported, {summary['skipped']} skipped, "
        f"{summary['suspicious']} suspicious, {len(errors)} rejected"
    )


if __name__ == '__main__':
    app.run(debug=True, port=5000)
