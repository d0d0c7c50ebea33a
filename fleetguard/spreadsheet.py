"""Spreadsheet import with tolerant header detection, and .xlsx export.

Uploaded workbooks come from different stations and offices: the header
row is not always the first one, columns are in any order and labels vary
("Immat.", "Véhicule", "N° plaque"...). ``detect_header`` finds the header
row and maps each column to a fuel log field without relying on position.
"""

import csv
import io
import logging
import re
import unicodedata
from datetime import date, datetime, timedelta
from difflib import SequenceMatcher

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

logger = logging.getLogger(__name__)

FIELD_SYNONYMS = {
    'vehicle': ['immatriculation', 'immat', 'vehicule', 'vehicle', 'plaque', 'n plaque',
                'matricule', 'registration', 'plate', 'voiture'],
    'driver': ['chauffeur', 'conducteur', 'driver', 'nom chauffeur', 'nom du chauffeur'],
    'date': ['date', 'date plein', 'date du plein', 'jour', 'date operation', 'day'],
    'km_depart': ['km depart', 'kilometrage depart', 'index depart', 'compteur depart',
                  'km debut', 'odometre debut', 'start km', 'km start', 'km initial'],
    'km_arrivee': ['km arrivee', 'kilometrage arrivee', 'index arrivee', 'compteur arrivee',
                   'km fin', 'odometre fin', 'end km', 'km end', 'km final'],
    'odometer': ['kilometrage', 'compteur', 'odometre', 'odometer', 'km', 'index', 'mileage'],
    'litres': ['litres', 'litre', 'quantite', 'qte', 'volume', 'liters', 'nb litres',
               'quantite litres', 'carburant l'],
    'montant': ['montant', 'cout', 'prix total', 'total', 'amount', 'cost', 'montant ar',
                'somme', 'prix'],
}

REQUIRED_FIELDS = ('vehicle', 'litres')
ODOMETER_FIELDS = ('km_arrivee', 'odometer')
SUMMARY_LABELS = ('total', 'totaux', 'sous total', 'moyenne', 'sum')
FUZZY_RATIO = 0.85
EXCEL_EPOCH = datetime(1899, 12, 30)


class HeaderNotFoundError(ValueError):
    pass


class UnsupportedFileError(ValueError):
    pass


def normalize_label(value):
    if value is None:
        return ''
    text = unicodedata.normalize('NFKD', str(value))
    text = ''.join(c for c in text if not unicodedata.combining(c)).lower()
    text = re.sub(r'[^a-z0-9]+', ' ', text)
    return ' '.join(text.split())


def score_label(label, field):
    """3 for an exact synonym, 2 when a synonym's words all appear, 1 for a close spelling."""
    if not label:
        return 0
    words = set(label.split())
    best = 0
    for synonym in FIELD_SYNONYMS[field]:
        if label == synonym:
            return 3
        if set(synonym.split()) <= words:
            best = max(best, 2)
        elif SequenceMatcher(None, label, synonym).ratio() >= FUZZY_RATIO:
            best = max(best, 1)
    return best


def map_columns(cells):
    """Assign fields to columns greedily by descending score.

    Returns ``{field: column_index}`` and the total score.
    """
    labels = [normalize_label(c) for c in cells]
    candidates = []
    for col, label in enumerate(labels):
        for field in FIELD_SYNONYMS:
            score = score_label(label, field)
            if score:
                candidates.append((score, len(label), col, field))
    # longer labels first on ties so "km depart" beats a bare "km"
    candidates.sort(key=lambda c: (-c[0], -c[1], c[2]))

    mapping, used, total = {}, set(), 0
    for score, _, col, field in candidates:
        if field in mapping or col in used:
            continue
        mapping[field] = col
        used.add(col)
        total += score
    return mapping, total


def _qualifies(mapping):
    return all(f in mapping for f in REQUIRED_FIELDS) and any(f in mapping for f in ODOMETER_FIELDS)


def detect_header(rows, max_scan=15):
    """Find the header row among the first ``max_scan`` rows.

    Returns ``(row_index, mapping)``. Raises HeaderNotFoundError when no row
    names a vehicle, a volume and an odometer column.
    """
    best = None
    for index, row in enumerate(rows[:max_scan]):
        mapping, total = map_columns(row)
        if not _qualifies(mapping):
            continue
        rank = (len(mapping), total)
        if best is None or rank > best[0]:
            best = (rank, index, mapping)
    if best is None:
        raise HeaderNotFoundError(
            "No header row found: expected columns for vehicle, litres and odometer"
        )
    return best[1], best[2]


def detect_sheet(sheets, max_scan=15):
    """Pick the sheet whose header maps the most fields.

    ``sheets`` is a list of ``(title, rows)``. Returns ``(title, rows,
    header_index, mapping)``.
    """
    best = None
    for title, rows in sheets:
        try:
            index, mapping = detect_header(rows, max_scan=max_scan)
        except HeaderNotFoundError:
            continue
        rank = (len(mapping), map_columns(rows[index])[1])
        if best is None or rank > best[0]:
            best = (rank, title, rows, index, mapping)
    if best is None:
        raise HeaderNotFoundError(
            "No sheet contains a fuel table (vehicle, litres and odometer columns)"
        )
    return best[1:]


def parse_number(value):
    """Parse spreadsheet numbers: "1 234,50", "1.234,5", "1,234.5", "45 L"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = re.sub(r'\s', '', str(value))
    text = re.sub(r'[^0-9,.\-]', '', text)
    if not text or text in ('-', '.', ','):
        return None
    if ',' in text and '.' in text:
        # the right-most separator is the decimal one
        if text.rfind(',') > text.rfind('.'):
            text = text.replace('.', '').replace(',', '.')
        else:
            text = text.replace(',', '')
    elif text.count(',') == 1:
        text = text.replace(',', '.')
    elif text.count(',') > 1:
        text = text.replace(',', '')
    elif text.count('.') > 1:
        text = text.replace('.', '')
    try:
        return float(text)
    except ValueError:
        return None


def parse_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if 1 < value < 100000:
            return (EXCEL_EPOCH + timedelta(days=float(value))).date()
        return None
    text = str(value).strip().split(' ')[0].split('T')[0]
    for fmt in ('%d/%m/%y', '%d/%m/%Y', '%Y-%m-%d', '%d-%m-%Y', '%d.%m.%Y', '%Y/%m/%d'):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _cell(row, mapping, field):
    col = mapping.get(field)
    if col is None or col >= len(row):
        return None
    return row[col]


def _is_blank(row):
    return all(v is None or str(v).strip() == '' for v in row)


def _is_summary(row):
    """True for "TOTAL", "Sous-total", "Moyenne"... in any text cell of the row."""
    for value in row:
        if not isinstance(value, str):
            continue
        label = normalize_label(value)
        if any(label == s or label.startswith(s + ' ') for s in SUMMARY_LABELS):
            return True
    return False


def extract_fuel_rows(rows, header_index, mapping):
    """Turn the data rows under the header into fuel entries.

    Returns ``(entries, errors)``; each entry carries ``row`` (1-based
    spreadsheet row number) and each error is ``{"row", "error"}``.
    """
    entries, errors = [], []
    odometer_field = 'km_arrivee' if 'km_arrivee' in mapping else 'odometer'
    for offset, row in enumerate(rows[header_index + 1:], start=header_index + 2):
        if _is_blank(row) or _is_summary(row):
            continue
        plate = _cell(row, mapping, 'vehicle')
        if not normalize_label(plate):
            errors.append({'row': offset, 'error': 'Missing vehicle'})
            continue

        km_arrivee = parse_number(_cell(row, mapping, odometer_field))
        litres = parse_number(_cell(row, mapping, 'litres'))
        day = parse_date(_cell(row, mapping, 'date')) if 'date' in mapping else None
        if km_arrivee is None:
            errors.append({'row': offset, 'error': 'Missing or invalid odometer'})
            continue
        if litres is None:
            errors.append({'row': offset, 'error': 'Missing or invalid litres'})
            continue
        if day is None:
            errors.append({'row': offset, 'error': 'Missing or invalid date'})
            continue

        driver = _cell(row, mapping, 'driver')
        entries.append({
            'row': offset,
            'immatriculation': normalize_plate(plate),
            'chauffeur': str(driver).strip() if driver not in (None, '') else None,
            'date': day,
            'km_depart': parse_number(_cell(row, mapping, 'km_depart')),
            'km_arrivee': km_arrivee,
            'litres': litres,
            'montant': parse_number(_cell(row, mapping, 'montant')) or 0.0,
        })
    return entries, errors


def normalize_plate(value):
    return re.sub(r'[\s\-]+', '', str(value)).upper()


def read_sheets(stream, filename):
    """Load every sheet of an upload as ``[(title, rows)]``."""
    name = (filename or '').lower()
    if name.endswith('.xlsx') or name.endswith('.xlsm'):
        wb = load_workbook(stream, data_only=True)
        # rows are numbered from 1 even when the first lines are empty
        return [
            (ws.title, [list(r) for r in ws.iter_rows(min_row=1, min_col=1, values_only=True)])
            for ws in wb.worksheets
        ]
    if name.endswith('.csv'):
        raw = stream.read()
        text = raw.decode('utf-8-sig', errors='replace') if isinstance(raw, bytes) else raw
        try:
            dialect = csv.Sniffer().sniff(text[:4096], delimiters=',;\t')
        except csv.Error:
            dialect = csv.excel
        return [('csv', [row for row in csv.reader(io.StringIO(text), dialect)])]
    raise UnsupportedFileError(f"Unsupported file type: {filename or 'unnamed'} (expected .xlsx or .csv)")


def load_fuel_entries(stream, filename):
    title, rows, header_index, mapping = detect_sheet(read_sheets(stream, filename))
    logger.info("Import %s: sheet %r, header on row %d, columns %s",
                filename, title, header_index + 1, mapping)
    entries, errors = extract_fuel_rows(rows, header_index, mapping)
    return entries, errors


def make_xlsx_bytes(sheet_name, headers, rows):
    wb = Workbook()
    ws = wb.active
    ws.title = (sheet_name or 'Sheet1')[:31]

    ws.append(list(headers))
    header_font = Font(bold=True)
    for col in range(1, len(headers) + 1):
        cell = ws.cell(row=1, column=col)
        cell.font = header_font
        cell.alignment = Alignment(horizontal='center', vertical='center', wrap_text=True)

    for r in rows:
        ws.append(['' if v is None else v for v in r])

    ws.freeze_panes = 'A2'

    for col_idx in range(1, len(headers) + 1):
        letter = get_column_letter(col_idx)
        width = max((len(str(c.value)) for c in ws[letter] if c.value is not None), default=0)
        ws.column_dimensions[letter].width = min(max(10, width + 2), 50)

    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()
