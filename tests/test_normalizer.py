"""
Tests for locating and normalizing connection records.
"""

import orjson
import pytest

from beacon_analyzer.exceptions import (
    InputError, InsufficientDataError, InvalidDocumentError, MissingFieldError
)
from beacon_analyzer.models import ConnectionRecord
from beacon_analyzer.normalizer import (
    extract_connections, load_connections, normalize_connection, normalize_connections
)


def test_normalize_aliases():
    """Exporter-specific field names map onto canonical fields."""
    record = normalize_connection({
        'ts': 1700000000000,
        'length': 512,
        'dst': '203.0.113.7',
        'src': '10.0.0.5',
        'sport': 51000,
        'tcp_dstport': 8443,
    })
    assert record == ConnectionRecord(
        timestamp=1700000000000,
        dest_ip='203.0.113.7',
        bytes=512,
        src_ip='10.0.0.5',
        src_port=51000,
        dest_port=8443,
    )


def test_seconds_are_scaled_to_milliseconds():
    assert normalize_connection({'time': 1700000000}).timestamp == 1700000000000
    assert normalize_connection({'timestamp': '1700000000.5'}).timestamp == 1700000000500


def test_iso_timestamps():
    record = normalize_connection({'timestamp': '2024-03-01T12:00:00Z'})
    assert record.timestamp == 1709294400000


def test_missing_fields_use_defaults():
    record = normalize_connection({'timestamp': 1700000000000})
    assert record.dest_ip == 'unknown'
    assert record.src_ip == 'unknown'
    assert record.bytes == 0
    assert record.dest_port == 0


def test_zero_values_fall_through_to_aliases():
    record = normalize_connection({'timestamp': 0, 'time': 1700000000, 'bytes': 0, 'size': 99})
    assert record.timestamp == 1700000000000
    assert record.bytes == 99


def test_record_without_timestamp():
    assert normalize_connection({'dest_ip': '1.2.3.4'}) is None
    assert normalize_connection({'timestamp': 'yesterday'}) is None
    assert normalize_connection('not a record') is None


def test_normalization_is_idempotent():
    raw = [{'ts': 1700000000 + i * 60, 'dst_ip': '198.51.100.1', 'size': 100} for i in range(5)]
    once = normalize_connections(raw)
    assert normalize_connections(once) == once


def test_records_without_timestamp_are_dropped():
    raw = [
        {'timestamp': 1700000000000},
        {'dest_ip': '1.2.3.4'},
        {'timestamp': 1700000060000},
    ]
    assert len(normalize_connections(raw)) == 2


def test_insufficient_data():
    with pytest.raises(InsufficientDataError) as excinfo:
        normalize_connections([{'timestamp': 1700000000000}])
    assert excinfo.value.found == 1
    assert 'need at least 2 connections, found 1' in str(excinfo.value)


def test_insufficient_after_dropping():
    raw = [{'timestamp': 1700000000000}, {'timestamp': 'bad'}, {'bytes': 1}]
    with pytest.raises(InsufficientDataError):
        normalize_connections(raw)


def test_missing_timestamp_field():
    raw = [{'dest_ip': '1.2.3.4', 'bytes': 10}] * 10
    with pytest.raises(MissingFieldError) as excinfo:
        normalize_connections(raw)
    assert excinfo.value.field == 'timestamp'
    assert excinfo.value.sample_size == 5
    assert isinstance(excinfo.value, InputError)


@pytest.mark.parametrize('value', ['nan', 'inf', '-inf', 'Infinity', float('nan'), float('inf'),
                                   '1e20', 1e20, 10 ** 400, '9999-12-31T23:00:00Z'])
def test_unrepresentable_timestamps_are_rejected(value):
    assert normalize_connection({'timestamp': value}) is None


def test_unrepresentable_timestamps_raise_input_error():
    raw = [{'timestamp': 1700000000000}, {'timestamp': 'nan'}, {'timestamp': 1e20}]
    with pytest.raises(InputError) as excinfo:
        normalize_connections(raw)
    assert isinstance(excinfo.value, InsufficientDataError)
    assert excinfo.value.found == 1


def test_non_finite_numeric_fields_default_to_zero():
    record = normalize_connection({'timestamp': 1700000000000, 'bytes': 'nan',
                                   'dest_port': float('inf'), 'src_port': '1e400'})
    assert (record.bytes, record.dest_port, record.src_port) == (0, 0, 0)


@pytest.mark.parametrize('key', ['connections', 'packets', 'flows', 'events', 'records', 'logs', 'data'])
def test_extract_from_containers(key):
    rows = [{'timestamp': 1}, {'timestamp': 2}]
    assert extract_connections({key: rows}) == rows


def test_extract_from_text_and_arrays():
    rows = [{'timestamp': 1700000000}, {'timestamp': 1700000060}]
    assert extract_connections(rows) == rows
    assert extract_connections(orjson.dumps(rows)) == rows
    assert extract_connections(orjson.dumps({'connections': rows}).decode()) == rows


def test_extract_rejects_unknown_documents():
    with pytest.raises(InvalidDocumentError):
        extract_connections({'items': []})
    with pytest.raises(InvalidDocumentError):
        extract_connections('{not json')
    with pytest.raises(ValueError):
        extract_connections(42)


def test_load_connections():
    document = orjson.dumps({'flows': [
        {'epoch': 1700000000, 'destination': '203.0.113.9', 'dport': 443},
        {'epoch': 1700000030, 'destination': '203.0.113.9', 'dport': 443},
    ]})
    records = load_connections(document)
    assert [r.timestamp for r in records] == [1700000000000, 1700000030000]
    assert {r.dest_ip for r in records} == {'203.0.113.9'}
    assert records[0].dest_port == 443
