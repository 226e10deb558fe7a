"""
Connection normalization.

Uploaded datasets come from many exporters (Zeek, Wireshark JSON, custom
scripts) that name the same field differently. This module locates the
connection list in a document and maps each record onto a canonical
``ConnectionRecord``.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import orjson

from .exceptions import InsufficientDataError, InvalidDocumentError, MissingFieldError
from .models import ConnectionRecord

logger = logging.getLogger(__name__)

MIN_CONNECTIONS = 2
TIMESTAMP_SAMPLE_SIZE = 5

# Values below this are epoch seconds; anything above is already milliseconds.
SECONDS_THRESHOLD = 10_000_000_000
# Last representable day, 9999-12-31T00:00:00Z.
MAX_TIMESTAMP_MS = 253_402_214_400_000

CONTAINER_KEYS = ('packets', 'flows', 'events', 'records', 'logs', 'data')

TIMESTAMP_FIELDS = ('timestamp', 'time', 'ts', 'epoch', 'time_unix')
BYTES_FIELDS = ('bytes', 'size', 'length', 'data_len', 'frame_len')
DEST_IP_FIELDS = ('dest_ip', 'dst', 'destination', 'dst_ip', 'ip_dst')
SRC_IP_FIELDS = ('src_ip', 'src', 'source', 'ip_src')
SRC_PORT_FIELDS = ('src_port', 'sport', 'source_port', 'tcp_srcport')
DEST_PORT_FIELDS = ('dest_port', 'dport', 'destination_port', 'dst_port', 'tcp_dstport')

RawConnection = Union[Mapping[str, Any], ConnectionRecord]


def extract_connections(document: Any) -> List[Any]:
    """Locate the connection array inside a parsed or raw JSON document."""
    if isinstance(document, (bytes, bytearray, memoryview, str)):
        try:
            document = orjson.loads(document)
        except orjson.JSONDecodeError as e:
            raise InvalidDocumentError(f"JSON parsing failed: {e}") from e

    if isinstance(document, list):
        return document

    if isinstance(document, Mapping):
        if isinstance(document.get('connections'), list):
            return document['connections']
        for key in CONTAINER_KEYS:
            if isinstance(document.get(key), list):
                return document[key]

    raise InvalidDocumentError(
        "Unrecognized JSON format. Expected {\"connections\": [...]}, a top-level "
        f"array, or one of: {', '.join(CONTAINER_KEYS)}"
    )


def _first_present(raw: Mapping[str, Any], fields: Sequence[str]) -> Any:
    for name in fields:
        value = raw.get(name)
        if value not in (None, '', 0):
            return value
    return None


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            return None
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _parse_timestamp(value: Any) -> Optional[int]:
    number = _to_number(value)
    if number is None and isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        number = parsed.timestamp() * 1000
    elif number is not None and 0 < number < SECONDS_THRESHOLD:
        number *= 1000
    if number is None or number <= 0 or number > MAX_TIMESTAMP_MS:
        return None
    return int(round(number))


def _to_int(value: Any) -> int:
    number = _to_number(value)
    if number is None or number < 0:
        return 0
    return int(number)


def has_timestamp(raw: Any) -> bool:
    if isinstance(raw, ConnectionRecord):
        return True
    return isinstance(raw, Mapping) and _first_present(raw, TIMESTAMP_FIELDS) is not None


def resolve_timestamp(raw: RawConnection) -> Optional[int]:
    """Return the record's timestamp in milliseconds, or None."""
    if isinstance(raw, ConnectionRecord):
        return raw.timestamp
    return _parse_timestamp(_first_present(raw, TIMESTAMP_FIELDS))


def normalize_connection(raw: RawConnection) -> Optional[ConnectionRecord]:
    """Map one loosely-typed record onto a ConnectionRecord.

    Returns None when no usable timestamp can be resolved.
    """
    if isinstance(raw, ConnectionRecord):
        return raw
    if not isinstance(raw, Mapping):
        return None

    timestamp = resolve_timestamp(raw)
    if timestamp is None:
        return None

    dest_ip = _first_present(raw, DEST_IP_FIELDS)
    src_ip = _first_present(raw, SRC_IP_FIELDS)
    return ConnectionRecord(
        timestamp=timestamp,
        bytes=_to_int(_first_present(raw, BYTES_FIELDS)),
        dest_ip=str(dest_ip) if dest_ip is not None else 'unknown',
        src_ip=str(src_ip) if src_ip is not None else 'unknown',
        src_port=_to_int(_first_present(raw, SRC_PORT_FIELDS)),
        dest_port=_to_int(_first_present(raw, DEST_PORT_FIELDS)),
    )


def validate_connections(connections: Sequence[Any]) -> None:
    """Fast pre-validation of a raw connection list.

    Only the first few records are sampled for a timestamp field.
    """
    if not isinstance(connections, Sequence) or isinstance(connections, (str, bytes)):
        raise InvalidDocumentError("Connection data must be an array")

    if len(connections) < MIN_CONNECTIONS:
        raise InsufficientDataError(len(connections), MIN_CONNECTIONS)

    sample = connections[:TIMESTAMP_SAMPLE_SIZE]
    if not any(has_timestamp(conn) for conn in sample):
        raise MissingFieldError('timestamp', TIMESTAMP_FIELDS, len(sample))


def normalize_connections(connections: Iterable[Any]) -> List[ConnectionRecord]:
    """Validate and normalize a raw connection list."""
    connections = list(connections)
    validate_connections(connections)

    records = []
    dropped = 0
    for raw in connections:
        record = normalize_connection(raw)
        if record is None:
            dropped += 1
            continue
        records.append(record)

    if dropped:
        logger.warning(f"Dropped {dropped} connection(s) without a usable timestamp")

    if len(records) < MIN_CONNECTIONS:
        raise InsufficientDataError(len(records), MIN_CONNECTIONS)

    return records


def load_connections(document: Any) -> List[ConnectionRecord]:
    """Parse a document and return its normalized connections."""
    return normalize_connections(extract_connections(document))
