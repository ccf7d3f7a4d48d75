import os
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'

import unittest
import io
import json
from datetime import date
from unittest.mock import patch
from urllib.parse import urlparse
from app import app, db, LambingRecord, Sheep, build_month_calendar, form_values
from metrics import MAX_LAMB_ROWS

def lambing_form(**overrides):
    data = {
        'date': '2024-03-01',
        'ewe_id': ' E100 ',
        'sire_id': 'R1',
        'scanned_count': '3',
        'male_lambs': '1',
        'female_lambs': '1',
        'deaths': '1',
        'assistance': 'Minor',
        'id_mark': 'Blue',
        'comments': 'Twins, one lost',
        'lamb_sex': ['M', 'F'],
        'lamb_id': ['L1', ''],
        'lamb_weight': ['4.5', '3.9'],
    }
    data.update(overrides)
    return data

class LambingTestCase(unittest.TestCase):
    def setUp(self):
        app.config['TESTING'] = True
        self.app = app.test_client()
        self.ctx = app.app_context()
        self.ctx.push()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def add_record(self, **kwargs):
        values = dict(date=date(2024, 3, 1), ewe_id='E100', male_lambs=1, female_lambs=1, deaths=0,
                      lambs_born=2, sex_distribution='1M 1F', assistance='None')
        values.update(kwargs)
        record = LambingRecord(**values)
        db.session.add(record)
        db.session.commit()
        return record

class RecordCrudTestCase(LambingTestCase):
    def test_create_record(self):
        response = self.app.post('/records', data=lambing_form(), follow_redirects=True)
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Saved locally!', response.data)

        record = LambingRecord.query.one()
        self.assertEqual(record.ewe_id, 'E100')
        self.assertEqual(record.date, date(2024, 3, 1))
        self.assertEqual(record.lambs_born, 3)
        self.assertEqual(record.sex_distribution, '1M 1F')
        self.assertEqual(record.scanned_count, 3)
        self.assertEqual(json.loads(record.lamb_ids), [
            {'id': 'L1', 'weight': '4.5', 'sex': 'M'},
            {'id': '', 'weight': '3.9', 'sex': 'F'},
        ])

    def test_create_registers_sheep(self):
        self.app.post('/records', data=lambing_form(), follow_redirects=True)

        ewe = db.session.get(Sheep, 'E100')
        ram = db.session.get(Sheep, 'R1')
        lamb = db.session.get(Sheep, 'L1')
        self.assertTrue(ewe.is_ewe)
        self.assertFalse(ewe.is_ram)
        self.assertTrue(ram.is_ram)
        self.assertFalse(lamb.is_ewe)
        self.assertFalse(lamb.is_ram)
        self.assertEqual(Sheep.query.count(), 3) # unnamed lamb is not stored

    def test_required_fields(self):
        response = self.app.post('/records', data=lambing_form(ewe_id='  '), follow_redirects=True)
        self.assertIn(b'Ewe ID and Date are required.', response.data)
        response = self.app.post('/records', data=lambing_form(date=''), follow_redirects=True)
        self.assertIn(b'Ewe ID and Date are required.', response.data)
        self.assertEqual(LambingRecord.query.count(), 0)

    def test_bad_date_is_reported(self):
        response = self.app.post('/records', data=lambing_form(date='01/03/2024'), follow_redirects=True)
        self.assertIn(b'Error saving record:', response.data)
        self.assertEqual(LambingRecord.query.count(), 0)
        self.assertEqual(Sheep.query.count(), 0)

    def test_oversized_image_is_rejected(self):
        data = lambing_form()
        data['image'] = (io.BytesIO(b'\xff' * 32), 'photo.jpg')
        with patch.dict(app.config, {'MAX_IMAGE_BYTES': 16}):
            response = self.app.post('/records', data=data, content_type='multipart/form-data', follow_redirects=True)
        self.assertIn(b'Error saving record: Image is larger than the 16 byte limit', response.data)
        self.assertEqual(LambingRecord.query.count(), 0)

    def test_request_over_body_limit(self):
        data = lambing_form()
        data['image'] = (io.BytesIO(b'\xff' * 256), 'photo.jpg')
        with patch.dict(app.config, {'MAX_CONTENT_LENGTH': 128}):
            response = self.app.post('/records', data=data, content_type='multipart/form-data', follow_redirects=True)
        self.assertIn(b'Upload is too large.', response.data)
        self.assertEqual(LambingRecord.query.count(), 0)

    def test_edit_replaces_fields_and_keeps_image(self):
        data = lambing_form()
        data['image'] = (io.BytesIO(b'\xff\xd8fakejpeg'), 'photo.jpg')
        self.app.post('/records', data=data, content_type='multipart/form-data', follow_redirects=True)
        record = LambingRecord.query.one()
        self.assertEqual(record.image_data, b'\xff\xd8fakejpeg')

        response = self.app.post(f'/records/{record.id}/edit', data=lambing_form(
            ewe_id='E200', sire_id='R9', male_lambs='2', female_lambs='0', deaths='0',
            lamb_sex=['M', 'M'], lamb_id=['L5', 'L6'], lamb_weight=['5', '5.2']),
            content_type='multipart/form-data', follow_redirects=True)
        self.assertEqual(response.status_code, 200)

        record = LambingRecord.query.one()
        self.assertEqual(record.ewe_id, 'E200')
        self.assertEqual(record.lambs_born, 2)
        self.assertEqual(record.sex_distribution, '2M 0F')
        self.assertEqual(record.image_data, b'\xff\xd8fakejpeg')

        # Edits do not touch the sheep list
        self.assertIsNone(db.session.get(Sheep, 'R9'))

        image = self.app.get(f'/records/{record.id}/image')
        self.assertEqual(image.data, b'\xff\xd8fakejpeg')

    def test_edit_form_prefill(self):
        record = self.add_record(lamb_ids=json.dumps([{'id': 'L1', 'weight': '4', 'sex': 'M'}]))
        response = self.app.get(f'/records/{record.id}/edit')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Edit Record', response.data)
        self.assertIn(b'Update Record', response.data)
        self.assertIn(b'value="L1"', response.data)
        self.assertIn(b'Female 1 ID', response.data)

    def test_form_values_fall_back_to_sex_distribution(self):
        record = LambingRecord(date=date(2024, 3, 1), ewe_id='E1', male_lambs=None, female_lambs=None,
                               deaths=1, sex_distribution='2M 1F')
        values = form_values(record)
        self.assertEqual(values['male_lambs'], 2)
        self.assertEqual(values['female_lambs'], 1)
        self.assertEqual(values['lambs_born'], 4)
        self.assertEqual(len(values['lamb_rows']), 3)

    def test_delete_record(self):
        record = self.add_record()
        response = self.app.post(f'/records/{record.id}/delete', follow_redirects=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(LambingRecord.query.count(), 0)

    def test_delete_ignores_referrer(self):
        record = self.add_record()
        response = self.app.post(f'/records/{record.id}/delete', headers={'Referer': 'http://elsewhere.example/page'})
        self.assertEqual(response.status_code, 302)
        self.assertEqual(urlparse(response.location).path, '/')
        self.assertNotIn('elsewhere.example', response.location)

    def test_unknown_record(self):
        self.assertEqual(self.app.get('/records/99/edit').status_code, 404)
        self.assertEqual(self.app.post('/records/99/delete').status_code, 404)
        record = self.add_record()
        self.assertEqual(self.app.get(f'/records/{record.id}/image').status_code, 404)

class CalendarTestCase(LambingTestCase):
    def test_leap_february_grid(self):
        cal = build_month_calendar(2024, 2, [], today=date(2024, 2, 10))
        self.assertEqual(cal['days_in_month'], 29)
        self.assertEqual(cal['leading_blanks'], 4) # 1 Feb 2024 is a Thursday
        self.assertEqual(len([c for c in cal['cells'] if c]), 29)
        self.assertTrue(cal['cells'][4 + 9]['is_today'])

    def test_month_starting_on_sunday(self):
        cal = build_month_calendar(2024, 9, [])
        self.assertEqual(cal['leading_blanks'], 0)
        self.assertEqual(cal['days_in_month'], 30)

    def test_day_counts(self):
        records = [self.add_record(), self.add_record(ewe_id='E101'), self.add_record(date=date(2024, 3, 5))]
        cal = build_month_calendar(2024, 3, records)
        by_day = {c['day']: c['count'] for c in cal['cells'] if c}
        self.assertEqual(by_day[1], 2)
        self.assertEqual(by_day[5], 1)
        self.assertEqual(by_day[2], 0)

    def test_index_renders_month(self):
        self.add_record(date=date(2024, 2, 10))
        response = self.app.get('/?year=2024&month=2')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'February 2024', response.data)
        self.assertEqual(response.data.count(b'calendar-day empty'), 4)
        self.assertEqual(response.data.count(b'class="day-number"'), 29)
        self.assertIn(b'day-badge">1</span>', response.data)

    def test_month_navigation_wraps_year(self):
        response = self.app.get('/?year=2024&month=1')
        self.assertIn(b'year=2023&amp;month=12', response.data)
        response = self.app.get('/?year=2024&month=12')
        self.assertIn(b'year=2025&amp;month=1', response.data)

    def test_invalid_month_falls_back_to_today(self):
        response = self.app.get('/?year=2024&month=13')
        self.assertEqual(response.status_code, 200)
        self.assertIn(str(date.today().year).encode(), response.data)

    def test_day_view(self):
        self.add_record(sire_id='R7', lamb_ids=json.dumps([{'id': '', 'weight': '4.1', 'sex': 'F'}]))
        response = self.app.get('/day/2024-03-01')
        self.assertIn(b'01/03/2024', response.data)
        self.assertIn(b'Ewe: E100', response.data)
        self.assertIn(b'R7', response.data)
        self.assertIn(b'N/A', response.data)
        self.assertIn(b'(4.1kg)', response.data)

        response = self.app.get('/day/2024-03-02')
        self.assertIn(b'No records for this day.', response.data)
        self.assertEqual(self.app.get('/day/not-a-date').status_code, 404)

    def test_malformed_lamb_ids_are_skipped(self):
        record = self.add_record(lamb_ids='{broken')
        self.assertEqual(record.lamb_details, [])
        response = self.app.get('/day/2024-03-01')
        self.assertEqual(response.status_code, 200)
        self.assertNotIn(b'Lamb Details:', response.data)

    def test_datalists(self):
        self.add_record(ewe_id='E300')
        db.session.add(Sheep(id='R1', is_ewe=False, is_ram=True))
        db.session.add(Sheep(id='E050', is_ewe=True, is_ram=False))
        db.session.commit()

        response = self.app.get('/?year=2024&month=3')
        ewe_list = response.data.split(b'id="ewe-datalist"')[1].split(b'</datalist>')[0]
        ram_list = response.data.split(b'id="ram-datalist"')[1].split(b'</datalist>')[0]
        self.assertLess(ewe_list.index(b'E050'), ewe_list.index(b'E300'))
        self.assertIn(b'R1', ewe_list)
        self.assertIn(b'R1', ram_list)
        self.assertNotIn(b'E300', ram_list)

    def test_lamb_rows_partial(self):
        existing = json.dumps([{'id': 'A1', 'weight': '4'}])
        response = self.app.get('/partials/lamb_rows', query_string={'male': '1', 'female': '2', 'existing': existing})
        self.assertIn(b'Male 1 ID', response.data)
        self.assertIn(b'Female 2 ID', response.data)
        self.assertIn(b'value="A1"', response.data)

    def test_lamb_rows_partial_with_bad_counts(self):
        response = self.app.get('/partials/lamb_rows', query_string={'male': 'inf', 'female': '1e3'})
        self.assertEqual(response.status_code, 200)
        self.assertNotIn(b'Male 1 ID', response.data)
        self.assertIn(b'Female 1 ID', response.data)
        self.assertNotIn(b'Female 2 ID', response.data)

        response = self.app.get('/partials/lamb_rows', query_string={'male': '100000000'})
        self.assertEqual(response.status_code, 200)
        self.assertIn(f'Male {MAX_LAMB_ROWS} ID'.encode(), response.data)
        self.assertNotIn(f'Male {MAX_LAMB_ROWS + 1} ID'.encode(), response.data)

class SearchTestCase(LambingTestCase):
    def test_search_matches_ewe_or_mark(self):
        self.add_record(ewe_id='E100', date=date(2024, 3, 1))
        self.add_record(ewe_id='X1', id_mark='e10 notch', date=date(2024, 3, 9))
        self.add_record(ewe_id='Z9', id_mark='Red')

        response = self.app.get('/search?q=E10')
        self.assertIn(b'Ewe: E100', response.data)
        self.assertIn(b'Ewe: X1', response.data)
        self.assertNotIn(b'Ewe: Z9', response.data)
        # newest first
        self.assertLess(response.data.index(b'Ewe: X1'), response.data.index(b'Ewe: E100'))

    def test_search_without_matches(self):
        self.add_record()
        response = self.app.get('/search?q=nothing')
        self.assertIn(b'No matching records found.', response.data)

    def test_search_wildcards_are_literal(self):
        self.add_record()
        response = self.app.get('/search?q=%25')
        self.assertIn(b'No matching records found.', response.data)

    def test_blank_search_returns_to_calendar(self):
        response = self.app.get('/search?q=+')
        self.assertEqual(response.status_code, 302)

if __name__ == '__main__':
    unittest.main()
