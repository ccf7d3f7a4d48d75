"""
Best-effort upload of local lambing records to a GrazeTrak server.

Each record is sent as its own multipart POST. A record either counts as
uploaded (2xx response) or failed; nothing is retried.
"""

import json
import logging

import requests

from exports import record_to_dict

logger = logging.getLogger(__name__)

UPLOAD_PATH = '/api/lambing_records'
DEFAULT_TIMEOUT = 30


def build_upload_url(base_url):
    return base_url.strip().rstrip('/') + UPLOAD_PATH

def image_upload_name(record):
    return f"lambing_{record.ewe_id}_{record.date}.jpg"

def upload_record(url, record, timeout=DEFAULT_TIMEOUT):
    """
    Posts one record. Returns True on a 2xx response, False otherwise.
    Transport errors are logged and reported as a failure.
    """
    payload = record_to_dict(record, include_id=False)
    data = {'data': json.dumps(payload)}

    files = None
    if record.image_data:
        files = {
            'image': (image_upload_name(record), record.image_data,
                      record.image_mimetype or 'image/jpeg'),
        }

    try:
        response = requests.post(url, data=data, files=files, timeout=timeout)
    except requests.exceptions.RequestException as e:
        logger.error(f"Upload failed for record {record.id} (ewe {record.ewe_id}): {e}")
        return False

    if response.ok:
        return True

    logger.warning(
        f"Server rejected record {record.id} (ewe {record.ewe_id}): "
        f"status {response.status_code}"
    )
    return False

def upload_records(records, base_url, timeout=DEFAULT_TIMEOUT):
    """Uploads records one after another. Returns (success_count, fail_count)."""
    url = build_upload_url(base_url)
    success_count = 0
    fail_count = 0

    for record in records:
        if upload_record(url, record, timeout=timeout):
            success_count += 1
        else:
            fail_count += 1

    logger.info(f"Sync to {url} finished: {success_count} uploaded, {fail_count} failed")
    return success_count, fail_count
