import re
from datetime import date, datetime

METRICS_REGISTRY = {
    # --- Counts ---
    'total_lambs': {'label': 'Lambs Born', 'unit': '', 'type': 'raw'},
    'total_deaths': {'label': 'Dead Lambs', 'unit': '', 'type': 'raw'},
    'total_living': {'label': 'Living Lambs', 'unit': '', 'type': 'derived'},
    'total_assisted': {'label': 'Assisted Lambings', 'unit': '', 'type': 'derived'},
    'total_ewes': {'label': 'Ewes Lambed', 'unit': '', 'type': 'raw'},

    # --- Performance ---
    'lambing_pct': {'label': 'Lambing (%)', 'unit': '%', 'type': 'derived'},
    'living_pct': {'label': 'Living (%)', 'unit': '%', 'type': 'derived'},
    'dead_pct': {'label': 'Dead (%)', 'unit': '%', 'type': 'derived'},
    'assisted_pct': {'label': 'Assisted (%)', 'unit': '%', 'type': 'derived'},
}

_sex_re = {
    'M': re.compile(r'(\d+)M'),
    'F': re.compile(r'(\d+)F'),
}

_leading_int_re = re.compile(r'^\s*([+-]?\d+)')

# Upper bound on per-sex rows in the lamb details form
MAX_LAMB_ROWS = 20

def to_int(val):
    """
    Lenient integer parse used for form fields. Strings are read up to the
    first non-digit ('12abc' is 12, '1e3' is 1); blanks and junk count as 0.
    """
    if val is None: return 0
    if isinstance(val, (int, float)):
        try:
            return int(val)
        except (ValueError, OverflowError):
            return 0
    m = _leading_int_re.match(str(val))
    return int(m.group(1)) if m else 0

def round_safe(val, digits=1):
    if val is None: return 0.0
    try:
        return round(float(val), digits)
    except (ValueError, TypeError):
        return 0.0

def safe_div(num, den, multiplier=100.0):
    if den and den > 0:
        return (num / den) * multiplier
    return 0.0

def calculate_total(male, female, dead):
    return to_int(male) + to_int(female) + to_int(dead)

def sex_distribution(male, female):
    return f"{to_int(male)}M {to_int(female)}F"

def parse_sex_distribution(text):
    """Returns (male, female) from text such as '2M 1F'. Missing parts are 0."""
    male, female = 0, 0
    if not text:
        return male, female
    m = _sex_re['M'].search(text)
    f = _sex_re['F'].search(text)
    if m: male = int(m.group(1))
    if f: female = int(f.group(1))
    return male, female

def is_assisted(assistance):
    return bool(assistance) and assistance != 'None'

def _record_year(record):
    d = record.date
    if isinstance(d, str):
        try:
            d = datetime.strptime(d, '%Y-%m-%d').date()
        except ValueError:
            return None
    if isinstance(d, (datetime, date)):
        return d.year
    return None

def calculate_year_totals(records, year):
    """
    Aggregates lambing records dated within `year` into the totals panel.
    Percentages are rounded to one decimal and fall back to 0 on an empty base.
    """
    records = [r for r in records if _record_year(r) == year]

    total_lambs = sum(to_int(r.lambs_born) for r in records)
    total_deaths = sum(to_int(r.deaths) for r in records)
    total_assisted = len([r for r in records if is_assisted(r.assistance)])
    total_living = total_lambs - total_deaths
    total_ewes = len(records)

    return {
        'year': year,
        'total_lambs': total_lambs,
        'total_deaths': total_deaths,
        'total_assisted': total_assisted,
        'total_living': total_living,
        'total_ewes': total_ewes,

        'lambing_pct': round_safe(safe_div(total_living, total_ewes)),
        'living_pct': round_safe(safe_div(total_living, total_lambs)),
        'dead_pct': round_safe(safe_div(total_deaths, total_lambs)),
        'assisted_pct': round_safe(safe_div(total_assisted, total_ewes)),
    }

def build_lamb_rows(male, female, existing=None):
    """
    Expands the living-lamb counts into per-lamb form rows, males first.
    Values from `existing` are carried over by position so that changing a
    count does not wipe what was already typed in. Each count is clamped to
    0..MAX_LAMB_ROWS.
    """
    male = min(max(to_int(male), 0), MAX_LAMB_ROWS)
    female = min(max(to_int(female), 0), MAX_LAMB_ROWS)
    existing = existing or []

    rows = []
    lamb_index = 0
    for sex, label, count in (('M', 'Male', male), ('F', 'Female', female)):
        for i in range(count):
            data = existing[lamb_index] if lamb_index < len(existing) else None
            data = data if isinstance(data, dict) else {}
            rows.append({
                'sex': sex,
                'label': f"{label} {i + 1}",
                'id': data.get('id') or '',
                'weight': data.get('weight') or '',
            })
            lamb_index += 1
    return rows
