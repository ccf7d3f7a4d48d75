import base64
import json
from datetime import date, datetime

import pandas as pd

CSV_COLUMNS = ['id', 'date', 'ewe_id', 'lambs_born', 'scanned_count', 'sex_distribution',
               'assistance', 'deaths', 'id_mark', 'comments']

# Fields that travel with a record in backups and uploads (image handled separately)
RECORD_FIELDS = ['date', 'ewe_id', 'lambs_born', 'male_lambs', 'female_lambs', 'scanned_count',
                 'sex_distribution', 'assistance', 'id_mark', 'comments', 'deaths', 'sire_id',
                 'lamb_ids']

INT_FIELDS = ('lambs_born', 'male_lambs', 'female_lambs', 'scanned_count', 'deaths')


class BackupFormatError(ValueError):
    pass


def record_to_dict(record, include_id=True, include_image=False):
    data = {}
    if include_id:
        data['id'] = record.id
    for field in RECORD_FIELDS:
        val = getattr(record, field)
        if isinstance(val, (datetime, date)):
            val = val.strftime('%Y-%m-%d')
        data[field] = val

    if include_image and record.image_data:
        data['image'] = base64.b64encode(record.image_data).decode('ascii')
        data['image_filename'] = record.image_filename
        data['image_mimetype'] = record.image_mimetype
    return data


# --- CSV ---

def escape_csv_value(val):
    """
    Doubles embedded quotes and only wraps the value in quotes when it holds
    a comma or a newline.
    """
    if val is None or (not isinstance(val, str) and pd.isna(val)):
        val = ''
    val = str(val).replace('"', '""')
    if ',' in val or '\n' in val:
        val = f'"{val}"'
    return val

def records_to_csv(records):
    rows = [record_to_dict(r) for r in records]
    df = pd.DataFrame(rows, columns=CSV_COLUMNS, dtype=object)

    lines = [','.join(CSV_COLUMNS)]
    for row in df.itertuples(index=False, name=None):
        lines.append(','.join(escape_csv_value(v) for v in row))
    return '\n'.join(lines)


# --- Backup & Restore ---

def build_backup(records, now=None):
    now = now or datetime.now()
    backup = {
        'timestamp': now.isoformat(),
        'records': [record_to_dict(r, include_image=True) for r in records],
    }
    return json.dumps(backup, indent=2)

def backup_filename(today=None):
    today = today or date.today()
    return f"lambtrak_backup_{today.strftime('%Y-%m-%d')}.json"

def parse_backup(text):
    """
    Returns the list of raw record dicts held in a backup file.
    Raises ValueError when the text is not JSON and BackupFormatError when
    the document has no `records` array.
    """
    data = json.loads(text)
    if not isinstance(data, dict) or not isinstance(data.get('records'), list):
        raise BackupFormatError('Invalid backup file format.')
    return data['records']

def normalize_backup_record(raw):
    """Converts a raw backup entry into model column values."""
    if not isinstance(raw, dict):
        raise ValueError(f"Backup record is not an object: {raw!r}")

    values = {}
    for field in RECORD_FIELDS:
        if field in raw:
            values[field] = raw[field]

    if not values.get('date') or not values.get('ewe_id'):
        raise ValueError(f"Backup record {raw.get('id')} is missing ewe_id or date")
    values['date'] = datetime.strptime(str(values['date'])[:10], '%Y-%m-%d').date()
    values['ewe_id'] = str(values['ewe_id']).strip()

    for field in INT_FIELDS:
        if field in values:
            try:
                values[field] = int(values[field] or 0)
            except (ValueError, TypeError):
                values[field] = 0

    if isinstance(values.get('lamb_ids'), list):
        values['lamb_ids'] = json.dumps(values['lamb_ids'])

    if raw.get('image'):
        values['image_data'] = base64.b64decode(raw['image'])
        values['image_filename'] = raw.get('image_filename')
        values['image_mimetype'] = raw.get('image_mimetype')

    record_id = raw.get('id')
    try:
        record_id = int(record_id) if record_id is not None else None
    except (ValueError, TypeError):
        record_id = None
    return record_id, values
