import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook, load_workbook

from fleetguard.spreadsheet import (
    HeaderNotFoundError,
    UnsupportedFileError,
    detect_header,
    detect_sheet,
    extract_fuel_rows,
    load_fuel_entries,
    make_xlsx_bytes,
    map_columns,
    normalize_label,
    parse_date,
    parse_number,
)


def _workbook_bytes(sheets):
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets:
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    bio = io.BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio


def test_normalize_label_strips_accents_and_punctuation():
    assert normalize_label('  Km Arrivée (compteur) ') == 'km arrivee compteur'
    assert normalize_label('Qté.') == 'qte'
    assert normalize_label(None) == ''


def test_map_columns_prefers_specific_odometer_labels():
    mapping, _ = map_columns(['Km', 'Km départ', 'Km arrivée'])

    assert mapping == {'km_depart': 1, 'km_arrivee': 2, 'odometer': 0}


def test_map_columns_tolerates_typos():
    mapping, _ = map_columns(['Immatriculaton', 'Litres', 'Kilométrage'])

    assert mapping['vehicle'] == 0
    assert mapping['litres'] == 1
    assert mapping['odometer'] == 2


def test_detect_header_below_title_rows_in_any_column_order():
    rows = [
        ['Suivi carburant janvier 2024'],
        [None, None, None],
        ['Montant (Ar)', 'Qté (L)', 'Immat.', 'Date du plein', 'Km Arrivée', 'Km Départ'],
        [200000, 40, '1234 TAA', '05/01/2024', 10450, 10000],
    ]

    index, mapping = detect_header(rows)

    assert index == 2
    assert mapping == {
        'montant': 0, 'litres': 1, 'vehicle': 2, 'date': 3, 'km_arrivee': 4, 'km_depart': 5,
    }


def test_detect_header_requires_vehicle_volume_and_odometer():
    rows = [['Date', 'Chauffeur', 'Montant'], ['05/01/2024', 'Rakoto', 1000]]

    with pytest.raises(HeaderNotFoundError):
        detect_header(rows)


def test_detect_sheet_skips_sheets_without_a_fuel_table():
    sheets = [
        ('Notes', [['Remarques'], ['RAS']]),
        ('Pleins', [['Véhicule', 'Litres', 'Kilométrage'], ['1234TAA', 40, 10000]]),
    ]

    title, rows, index, mapping = detect_sheet(sheets)

    assert title == 'Pleins'
    assert index == 0
    assert mapping == {'vehicle': 0, 'litres': 1, 'odometer': 2}


def test_detect_header_keeps_the_earliest_of_equal_rows():
    rows = [
        ['Relevé carburant'],
        ['Immatriculation', 'Litres', 'Kilométrage'],
        ['1234TAA', 40, 10000],
        ['Immatriculation', 'Litres', 'Kilométrage'],
        ['5678TBB', 30, 20000],
    ]

    index, _ = detect_header(rows)

    assert index == 1


def test_detect_sheet_prefers_the_richest_header():
    summary = ('Résumé', [['Véhicule', 'Litres', 'Compteur'], ['1234TAA', 40, 10000]])
    detail = ('Détail', [
        ['Date', 'Immatriculation', 'Chauffeur', 'Litres', 'Km départ', 'Km arrivée', 'Montant'],
        ['05/01/2024', '1234TAA', 'Rakoto', 40, 10000, 10450, 200000],
    ])

    assert detect_sheet([summary, detail])[0] == 'Détail'
    assert detect_sheet([detail, summary])[0] == 'Détail'
    assert detect_sheet([summary, ('Copie', summary[1])])[0] == 'Résumé'


def test_extract_rows_skips_totals_and_reports_bad_rows():
    rows = [
        ['Date', 'Immatriculation', 'Chauffeur', 'Litres', 'Km départ', 'Km arrivée', 'Montant'],
        [datetime(2024, 1, 5), '1234 taa', 'Rakoto', '40,5', 10000, 10450, '202 500'],
        [None, None, None, None, None, None, None],
        ['06/01/2024', '5678-TBB', None, 30, 20000, 20300, 150000],
        ['07/01/2024', '5678TBB', None, None, 20300, 20600, 150000],
        ['08/01/2024', None, None, 30, 20600, 20900, 150000],
        ['pas une date', '5678TBB', None, 30, 20900, 21200, 150000],
        [None, 'TOTAL', None, 100.5, None, None, 502500],
        ['Total', None, None, 100.5, None, None, 502500],
        ['Sous-total janvier', None, None, 70.5, None, None, 352500],
    ]
    index, mapping = detect_header(rows)

    entries, errors = extract_fuel_rows(rows, index, mapping)

    assert [e['row'] for e in entries] == [2, 4]
    first = entries[0]
    assert first['immatriculation'] == '1234TAA'
    assert first['chauffeur'] == 'Rakoto'
    assert first['date'] == date(2024, 1, 5)
    assert first['litres'] == pytest.approx(40.5)
    assert first['km_depart'] == pytest.approx(10000)
    assert first['km_arrivee'] == pytest.approx(10450)
    assert first['montant'] == pytest.approx(202500)
    assert entries[1]['immatriculation'] == '5678TBB'
    assert entries[1]['chauffeur'] is None
    assert errors == [
        {'row': 5, 'error': 'Missing or invalid litres'},
        {'row': 6, 'error': 'Missing vehicle'},
        {'row': 7, 'error': 'Missing or invalid date'},
    ]


def test_total_row_labelled_in_another_column_is_skipped():
    rows = [
        ['Date', 'Immatriculation', 'Litres', 'Km arrivée', 'Montant'],
        ['05/01/2024', '1234TAA', 40, 10450, 200000],
        ['TOTAL', None, 40, None, 200000],
    ]
    index, mapping = detect_header(rows)

    entries, errors = extract_fuel_rows(rows, index, mapping)

    assert [e['row'] for e in entries] == [2]
    assert errors == []


def test_single_odometer_column_leaves_start_empty():
    rows = [
        ['Véhicule', 'Date', 'Litres', 'Compteur'],
        ['1234TAA', '2024-01-05', 40, 10000],
    ]
    index, mapping = detect_header(rows)

    entries, errors = extract_fuel_rows(rows, index, mapping)

    assert errors == []
    assert entries[0]['km_depart'] is None
    assert entries[0]['km_arrivee'] == pytest.approx(10000)
    assert entries[0]['montant'] == 0.0


@pytest.mark.parametrize('raw, expected', [
    ('1 234,50', 1234.5),
    ('1.234,5', 1234.5),
    ('1,234.5', 1234.5),
    ('1.234.567', 1234567.0),
    ('45 L', 45.0),
    (12, 12.0),
    ('', None),
    ('abc', None),
    (None, None),
])
def test_parse_number(raw, expected):
    assert parse_number(raw) == expected


@pytest.mark.parametrize('raw, expected', [
    (datetime(2024, 1, 5, 8, 30), date(2024, 1, 5)),
    (date(2024, 1, 5), date(2024, 1, 5)),
    ('05/01/2024', date(2024, 1, 5)),
    ('05/01/24', date(2024, 1, 5)),
    ('2024-01-05', date(2024, 1, 5)),
    ('2024-01-05T10:00:00', date(2024, 1, 5)),
    ('05-01-2024', date(2024, 1, 5)),
    (45296, date(2024, 1, 5)),
    ('janvier', None),
    ('', None),
])
def test_parse_date(raw, expected):
    assert parse_date(raw) == expected


def test_load_fuel_entries_from_workbook():
    stream = _workbook_bytes([
        ('Lisez-moi', [['Export station'], ['Ne pas modifier']]),
        ('Janvier', [
            ['Station Jovenna - relevé'],
            ['Immat.', 'Conducteur', 'Jour', 'Quantité', 'Index arrivée', 'Coût'],
            ['1234 TAA', 'Rakoto', datetime(2024, 1, 5), 40, 10450, 200000],
            ['1234 TAA', 'Rakoto', datetime(2024, 1, 12), 38, 10900, 190000],
        ]),
    ])

    entries, errors = load_fuel_entries(stream, 'releve.xlsx')

    assert errors == []
    assert [(e['row'], e['date'], e['km_arrivee']) for e in entries] == [
        (3, date(2024, 1, 5), 10450.0),
        (4, date(2024, 1, 12), 10900.0),
    ]
    assert entries[0]['chauffeur'] == 'Rakoto'
    assert entries[0]['montant'] == pytest.approx(200000)


def test_load_fuel_entries_from_csv():
    content = (
        'Véhicule;Date;Litres;Kilométrage;Montant\n'
        '1234TAA;05/01/2024;40;10000;200000\n'
        '1234TAA;12/01/2024;38;10450;190000\n'
    ).encode('utf-8')

    entries, errors = load_fuel_entries(io.BytesIO(content), 'pleins.csv')

    assert errors == []
    assert len(entries) == 2
    assert entries[1]['date'] == date(2024, 1, 12)
    assert entries[1]['km_arrivee'] == pytest.approx(10450)


def test_unsupported_extension():
    with pytest.raises(UnsupportedFileError):
        load_fuel_entries(io.BytesIO(b'%PDF'), 'facture.pdf')


def test_workbook_without_fuel_table():
    stream = _workbook_bytes([('Feuil1', [['Nom', 'Prénom'], ['Rakoto', 'Jean']])])

    with pytest.raises(HeaderNotFoundError):
        load_fuel_entries(stream, 'personnel.xlsx')


def test_make_xlsx_bytes_writes_bold_frozen_header():
    content = make_xlsx_bytes('Carburant', ['Date', 'Litres'], [[date(2024, 1, 5), 40.0], [None, 12]])

    ws = load_workbook(io.BytesIO(content)).active
    assert ws.title == 'Carburant'
    assert ws.freeze_panes == 'A2'
    assert ws['A1'].value == 'Date'
    assert ws['A1'].font.bold
    assert ws['B2'].value == 40
    assert ws['A3'].value in (None, '')
    assert ws['B3'].value == 12
