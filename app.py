from flask import Flask, render_template, request, redirect, url_for, flash, Response, abort
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import or_
from werkzeug.utils import secure_filename
from datetime import datetime, date
import os
import json
import logging
import calendar
from dotenv import load_dotenv
from metrics import (METRICS_REGISTRY, to_int, calculate_total, sex_distribution, parse_sex_distribution,
                     calculate_year_totals, build_lamb_rows)
from exports import (records_to_csv, build_backup, backup_filename, parse_backup, normalize_backup_record,
                     BackupFormatError, RECORD_FIELDS)
from sync import upload_records

load_dotenv()

logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'),
                    format='%(asctime)s %(levelname)s %(name)s: %(message)s')

ASSISTANCE_OPTIONS = ['None', 'Minor', 'Major', 'Vet']

app = Flask(__name__)
basedir = os.path.abspath(os.path.dirname(__file__))
database_url = os.getenv('DATABASE_URL')
if database_url and database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url or 'sqlite:///' + os.path.join(basedir, 'instance', 'lambtrak.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev_key')
app.config['UPLOAD_TIMEOUT'] = float(os.getenv('UPLOAD_TIMEOUT', 30))
app.config['MAX_IMAGE_BYTES'] = int(os.getenv('MAX_IMAGE_BYTES', 10 * 1024 * 1024))
# Request body limit; backups carry every image base64-encoded
app.config['MAX_BACKUP_BYTES'] = int(os.getenv('MAX_BACKUP_BYTES', 200 * 1024 * 1024))
app.config['MAX_CONTENT_LENGTH'] = app.config['MAX_BACKUP_BYTES']
os.makedirs(os.path.join(basedir, 'instance'), exist_ok=True)

@app.template_filter('date_fmt')
def date_fmt_filter(value):
    if value is None:
        return ""
    if isinstance(value, str):
        try:
            value = datetime.strptime(value, '%Y-%m-%d')
        except ValueError:
            return value
    if isinstance(value, (datetime, date)):
        return value.strftime('%d/%m/%Y')
    return value

db = SQLAlchemy(app)
migrate = Migrate(app, db)

# --- Models ---

class LambingRecord(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, default=date.today, index=True)
    ewe_id = db.Column(db.String(50), nullable=False, index=True)
    sire_id = db.Column(db.String(50), nullable=True, index=True)

    # Counts
    male_lambs = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    female_lambs = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    deaths = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    lambs_born = db.Column(db.Integer, default=0, nullable=False, server_default='0') # male + female + dead at entry
    scanned_count = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    sex_distribution = db.Column(db.String(20)) # '2M 1F'

    assistance = db.Column(db.String(100))
    id_mark = db.Column(db.String(50))
    comments = db.Column(db.Text)

    lamb_ids = db.Column(db.Text) # JSON list of {id, weight, sex}

    # Embedded photo
    image_data = db.Column(db.LargeBinary, nullable=True)
    image_filename = db.Column(db.String(200), nullable=True)
    image_mimetype = db.Column(db.String(100), nullable=True)

    @property
    def lamb_details(self):
        if not self.lamb_ids:
            return []
        try:
            details = json.loads(self.lamb_ids)
        except ValueError as e:
            app.logger.warning(f"Error parsing lamb_ids for record {self.id}: {e}")
            return []
        if not isinstance(details, list):
            return []
        return [d for d in details if isinstance(d, dict)]

    def __repr__(self):
        return f"<LambingRecord {self.id} ewe={self.ewe_id} {self.date}>"

class Sheep(db.Model):
    id = db.Column(db.String(50), primary_key=True) # Tag / animal identifier
    is_ewe = db.Column(db.Boolean, default=False, nullable=False)
    is_ram = db.Column(db.Boolean, default=False, nullable=False)

class Setting(db.Model):
    key = db.Column(db.String(50), primary_key=True)
    value = db.Column(db.String(500), nullable=True)

IMAGE_FIELDS = ['image_data', 'image_filename', 'image_mimetype']

# --- Helpers ---

def get_setting(key, default=None):
    setting = db.session.get(Setting, key)
    if setting is None or setting.value is None:
        return default
    return setting.value

def set_setting(key, value, commit=True):
    db.session.merge(Setting(key=key, value=value))
    if commit:
        db.session.commit()

def parse_date_arg(date_str):
    return datetime.strptime(date_str, '%Y-%m-%d').date()

def lamb_rows_from_request(req):
    ids = req.form.getlist('lamb_id')
    weights = req.form.getlist('lamb_weight')
    sexes = req.form.getlist('lamb_sex')

    lambs = []
    for i, sex in enumerate(sexes):
        lambs.append({
            'id': (ids[i] if i < len(ids) else '').strip(),
            'weight': weights[i] if i < len(weights) else '',
            'sex': sex,
        })
    return lambs

def update_record_from_request(record, req):
    """Full replace of the record's form fields. The image is only touched when a new one is uploaded."""
    male = to_int(req.form.get('male_lambs'))
    female = to_int(req.form.get('female_lambs'))
    dead = to_int(req.form.get('deaths'))

    record.date = parse_date_arg(req.form.get('date'))
    record.ewe_id = (req.form.get('ewe_id') or '').strip()
    record.sire_id = (req.form.get('sire_id') or '').strip()
    record.male_lambs = male
    record.female_lambs = female
    record.deaths = dead
    record.lambs_born = calculate_total(male, female, dead)
    record.scanned_count = to_int(req.form.get('scanned_count'))
    record.sex_distribution = sex_distribution(male, female)
    record.assistance = req.form.get('assistance') or ''
    record.id_mark = (req.form.get('id_mark') or '').strip()
    record.comments = (req.form.get('comments') or '').strip()

    lambs = lamb_rows_from_request(req)
    record.lamb_ids = json.dumps(lambs)

    image = req.files.get('image')
    if image and image.filename:
        data = image.read()
        limit = app.config['MAX_IMAGE_BYTES']
        if len(data) > limit:
            raise ValueError(f"Image is larger than the {limit} byte limit")
        record.image_data = data
        record.image_filename = secure_filename(image.filename)
        record.image_mimetype = image.mimetype or 'image/jpeg'

    return lambs

def register_sheep(record, lambs):
    # Each put replaces the stored flags for that identifier
    db.session.merge(Sheep(id=record.ewe_id, is_ewe=True, is_ram=False))
    if record.sire_id:
        db.session.merge(Sheep(id=record.sire_id, is_ewe=False, is_ram=True))
    for lamb in lambs:
        if lamb.get('id'):
            db.session.merge(Sheep(id=lamb['id'], is_ewe=False, is_ram=False))

def missing_required_fields(req):
    return not (req.form.get('ewe_id') or '').strip() or not req.form.get('date')

def form_values(record=None):
    """Values used to pre-fill the lambing form."""
    if record is None:
        return {
            'date': date.today().strftime('%Y-%m-%d'),
            'ewe_id': '', 'sire_id': '', 'scanned_count': 0,
            'male_lambs': 0, 'female_lambs': 0, 'deaths': 0, 'lambs_born': 0,
            'assistance': 'None', 'id_mark': '', 'comments': '',
            'lamb_rows': [],
        }

    parsed_male, parsed_female = parse_sex_distribution(record.sex_distribution)
    male = record.male_lambs if record.male_lambs is not None else parsed_male
    female = record.female_lambs if record.female_lambs is not None else parsed_female
    dead = record.deaths or 0

    return {
        'date': record.date.strftime('%Y-%m-%d'),
        'ewe_id': record.ewe_id,
        'sire_id': record.sire_id or '',
        'scanned_count': record.scanned_count or 0,
        'male_lambs': male,
        'female_lambs': female,
        'deaths': dead,
        'lambs_born': calculate_total(male, female, dead),
        'assistance': record.assistance or 'None',
        'id_mark': record.id_mark or '',
        'comments': record.comments or '',
        'lamb_rows': build_lamb_rows(male, female, record.lamb_details),
    }

def get_sheep_lists():
    """Ewe suggestions: every ewe used in a record plus every stored sheep. Ram suggestions: stored rams."""
    used = {row[0] for row in db.session.query(LambingRecord.ewe_id).distinct()}
    stored = Sheep.query.all()
    used.update(s.id for s in stored)

    ewes = sorted(used)
    rams = sorted(s.id for s in stored if s.is_ram)
    return ewes, rams

def build_month_calendar(year, month, records, today=None):
    """
    Month grid with weeks starting on Sunday. `cells` holds None for the
    leading blanks followed by one entry per day of the month.
    """
    today = today or date.today()
    first_weekday, days_in_month = calendar.monthrange(year, month)
    leading_blanks = (first_weekday + 1) % 7 # monthrange counts from Monday

    counts = {}
    for r in records:
        counts[r.date] = counts.get(r.date, 0) + 1

    cells = [None] * leading_blanks
    for d in range(1, days_in_month + 1):
        day = date(year, month, d)
        cells.append({
            'date': day,
            'day': d,
            'count': counts.get(day, 0),
            'is_today': day == today,
        })

    return {
        'year': year,
        'month': month,
        'month_name': calendar.month_name[month],
        'leading_blanks': leading_blanks,
        'days_in_month': days_in_month,
        'cells': cells,
    }

def adjacent_months(year, month):
    prev_month = month - 1 if month > 1 else 12
    prev_year = year if month > 1 else year - 1
    next_month = month + 1 if month < 12 else 1
    next_year = year if month < 12 else year + 1
    return (prev_year, prev_month), (next_year, next_month)

def search_records(term):
    term = (term or '').strip().lower()
    if not term:
        return []
    return LambingRecord.query.filter(or_(
        LambingRecord.ewe_id.icontains(term, autoescape=True),
        LambingRecord.id_mark.icontains(term, autoescape=True),
    )).order_by(LambingRecord.date.desc(), LambingRecord.id.desc()).all()

def restore_records(raw_records):
    """Merges backup entries into the store: existing ids are replaced, others are added."""
    restored = 0
    for raw in raw_records:
        record_id, values = normalize_backup_record(raw)
        record = db.session.get(LambingRecord, record_id) if record_id is not None else None
        if record is None:
            record = LambingRecord(id=record_id)
            db.session.add(record)

        for field in RECORD_FIELDS + IMAGE_FIELDS:
            setattr(record, field, values.get(field))
        for field in ('male_lambs', 'female_lambs', 'deaths', 'lambs_born', 'scanned_count'):
            if getattr(record, field) is None:
                setattr(record, field, 0)
        restored += 1
    return restored

@app.context_processor
def utility_processor():
    return dict(metrics_registry=METRICS_REGISTRY,
                assistance_options=ASSISTANCE_OPTIONS,
                server_url=get_setting('server_url', ''))

@app.errorhandler(413)
def request_too_large(e):
    flash('Upload is too large.', 'danger')
    return redirect(url_for('index'))

# --- Calendar & Lists ---

@app.route('/')
def index():
    today = date.today()
    try:
        year = int(request.args.get('year', today.year))
        month = int(request.args.get('month', today.month))
        if not 1 <= month <= 12 or not 1 <= year <= 9999:
            raise ValueError(f"month {month} out of range")
    except ValueError:
        year = today.year
        month = today.month

    start_date = date(year, month, 1)
    end_date = date(year, month, calendar.monthrange(year, month)[1])
    month_records = LambingRecord.query.filter(
        LambingRecord.date >= start_date, LambingRecord.date <= end_date).all()

    year_records = LambingRecord.query.filter(
        LambingRecord.date >= date(year, 1, 1), LambingRecord.date <= date(year, 12, 31)).all()
    totals = calculate_year_totals(year_records, year)

    (prev_year, prev_month), (next_year, next_month) = adjacent_months(year, month)
    ewes, rams = get_sheep_lists()

    return render_template('index.html',
                           cal=build_month_calendar(year, month, month_records, today=today),
                           totals=totals,
                           prev_year=prev_year, prev_month=prev_month,
                           next_year=next_year, next_month=next_month,
                           ewes=ewes, rams=rams,
                           form=form_values(),
                           today=today)

@app.route('/day/<date_str>')
def day_records(date_str):
    try:
        day = parse_date_arg(date_str)
    except ValueError:
        abort(404)
    records = LambingRecord.query.filter_by(date=day).order_by(LambingRecord.id.asc()).all()
    return render_template('day_records.html', day=day, records=records)

@app.route('/search')
def search():
    term = request.args.get('q', '').strip()
    if not term:
        return redirect(url_for('index'))
    results = search_records(term)
    return render_template('search.html', term=term, records=results)

@app.route('/partials/lamb_rows')
def lamb_rows_partial():
    try:
        existing = json.loads(request.args.get('existing') or '[]')
    except ValueError:
        existing = []
    rows = build_lamb_rows(request.args.get('male'), request.args.get('female'),
                           existing if isinstance(existing, list) else [])
    return render_template('partials/lamb_rows.html', lamb_rows=rows)

# --- Records ---

@app.route('/records', methods=['POST'])
def add_record():
    if missing_required_fields(request):
        flash('Ewe ID and Date are required.', 'danger')
        return redirect(url_for('index'))

    try:
        record = LambingRecord()
        lambs = update_record_from_request(record, request)
        db.session.add(record)
        register_sheep(record, lambs)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.exception("Error saving lambing record")
        flash(f'Error saving record: {e}', 'danger')
        return redirect(url_for('index'))

    app.logger.info(f"Saved lambing record {record.id} for ewe {record.ewe_id}")
    flash('Saved locally!', 'success')
    return redirect(url_for('index', year=record.date.year, month=record.date.month))

@app.route('/records/<int:id>/edit', methods=['GET', 'POST'])
def edit_record(id):
    record = db.get_or_404(LambingRecord, id)
    if request.method == 'POST':
        if missing_required_fields(request):
            flash('Ewe ID and Date are required.', 'danger')
            return redirect(url_for('edit_record', id=id))

        try:
            update_record_from_request(record, request)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.exception(f"Error updating lambing record {id}")
            flash(f'Error saving record: {e}', 'danger')
            return redirect(url_for('edit_record', id=id))

        flash('Saved locally!', 'success')
        return redirect(url_for('day_records', date_str=record.date.strftime('%Y-%m-%d')))

    ewes, rams = get_sheep_lists()
    return render_template('record_edit.html', record=record, form=form_values(record), ewes=ewes, rams=rams)

@app.route('/records/<int:id>/delete', methods=['POST'])
def delete_record(id):
    record = db.get_or_404(LambingRecord, id)
    db.session.delete(record)
    db.session.commit()
    flash(f'Record for ewe {record.ewe_id} deleted.', 'warning')
    return redirect(url_for('index'))

@app.route('/records/<int:id>/image')
def record_image(id):
    record = db.get_or_404(LambingRecord, id)
    if not record.image_data:
        abort(404)
    return Response(record.image_data, mimetype=record.image_mimetype or 'image/jpeg')

# --- Export, Backup & Restore ---

@app.route('/export.csv')
def export_csv():
    records = LambingRecord.query.order_by(LambingRecord.id.asc()).all()
    if not records:
        flash('No data to export.', 'warning')
        return redirect(url_for('index'))

    return Response(records_to_csv(records),
                    mimetype='text/csv;charset=utf-8',
                    headers={'Content-Disposition': 'attachment; filename=lambtrak_export.csv'})

@app.route('/backup')
def backup():
    records = LambingRecord.query.order_by(LambingRecord.id.asc()).all()
    return Response(build_backup(records),
                    mimetype='application/json',
                    headers={'Content-Disposition': f'attachment; filename={backup_filename()}'})

@app.route('/restore', methods=['POST'])
def restore():
    file = request.files.get('backup_file')
    if not file or file.filename == '':
        flash('No selected file', 'danger')
        return redirect(url_for('index'))

    try:
        raw_records = parse_backup(file.read().decode('utf-8'))
    except BackupFormatError:
        flash('Invalid backup file format.', 'danger')
        return redirect(url_for('index'))
    except ValueError as e:
        flash(f'Error parsing backup file: {e}', 'danger')
        return redirect(url_for('index'))

    try:
        restored = restore_records(raw_records)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.exception("Error restoring backup")
        flash(f'Error parsing backup file: {e}', 'danger')
        return redirect(url_for('index'))

    flash(f'Restored {restored} records.', 'success')
    return redirect(url_for('index'))

# --- Server Sync ---

@app.route('/settings/server-url', methods=['POST'])
def save_server_url():
    set_setting('server_url', (request.form.get('server_url') or '').strip())
    flash('Server URL saved.', 'info')
    return redirect(url_for('index'))

@app.route('/upload', methods=['POST'])
def upload_to_server():
    server_url = request.form.get('server_url')
    if server_url is not None:
        set_setting('server_url', server_url.strip())
    server_url = (server_url or get_setting('server_url', '')).strip()

    if not server_url:
        flash('Please enter the GrazeTrak Server URL.', 'danger')
        return redirect(url_for('index'))

    records = LambingRecord.query.order_by(LambingRecord.id.asc()).all()
    if not records:
        flash('No records to upload.', 'warning')
        return redirect(url_for('index'))

    try:
        success_count, fail_count = upload_records(records, server_url, timeout=app.config['UPLOAD_TIMEOUT'])
    except Exception as e:
        app.logger.exception("Sync error")
        flash(f'An error occurred during sync: {e}', 'danger')
        return redirect(url_for('index'))

    flash(f'Sync Complete! Successfully uploaded: {success_count}, Failed: {fail_count}',
          'success' if fail_count == 0 else 'warning')
    return redirect(url_for('index'))

if __name__ == '__main__':
    app.run(debug=True)
