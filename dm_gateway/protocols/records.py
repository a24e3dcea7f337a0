"""
DATA_RECORDS payload decoder

Payload layout (all integers little-endian):

    sub-record: [length:2][...:4][timestamp:4][...:1][fields...]
    field:      [id:1][length:1][data:length]

The sub-record length covers the length field itself and the 11-byte header.
"""
import struct
import logging
from typing import List, Optional

from .base import (
    HEADER_SIZE,
    AnalogReading,
    DataRecord,
    FieldType,
    Frame,
    GPSReading,
)

logger = logging.getLogger(__name__)

RECORD_HEADER_SIZE = 11
GPS_FIELD_MIN_SIZE = 21
ANALOG_ENTRY_SIZE = 3  # channel(1) + int16 value(2)
BATTERY_CHANNEL = 1

_GPS_STRUCT = struct.Struct('<IiihH')  # timestamp, lat, lon, altitude, speed


def decode_gps_field(data: bytes) -> Optional[GPSReading]:
    """Decode a GPS field; fields shorter than 21 bytes are silently dropped"""
    if len(data) < GPS_FIELD_MIN_SIZE:
        return None

    timestamp, lat_raw, lon_raw, altitude, ground_speed = _GPS_STRUCT.unpack_from(data, 0)

    return GPSReading(
        timestamp=timestamp,
        latitude=lat_raw / 10000000.0,
        longitude=lon_raw / 10000000.0,
        altitude=altitude,
        ground_speed=ground_speed,
        heading=data[17],
        pdop=data[18],
        position_accuracy=data[19],
        valid=True,
    )


def decode_analog16_field(data: bytes) -> AnalogReading:
    """Decode 16-bit analog entries, surfacing the battery channel (mV)"""
    battery_voltage = None

    for i in range(0, len(data) - ANALOG_ENTRY_SIZE + 1, ANALOG_ENTRY_SIZE):
        channel = data[i]
        value = struct.unpack_from('<h', data, i + 1)[0]
        if channel == BATTERY_CHANNEL:
            battery_voltage = value / 1000.0

    return AnalogReading(battery_voltage=battery_voltage)


def decode_analog32_field(data: bytes) -> AnalogReading:
    """32-bit analog fields are accepted but carry nothing we surface yet"""
    return AnalogReading()


FIELD_DECODERS = {
    FieldType.GPS: ('gps', decode_gps_field),
    FieldType.ANALOG_16: ('analog', decode_analog16_field),
    FieldType.ANALOG_32: ('analog', decode_analog32_field),
}


def _decode_fields(payload: bytes, start: int, end: int) -> dict:
    """Walk the fields of one sub-record; stops at the first field overrunning the payload"""
    values = {}
    offset = start

    while offset < end:
        if offset + 2 > len(payload):
            break

        field_id = payload[offset]
        field_len = payload[offset + 1]
        data_end = offset + 2 + field_len

        if data_end > len(payload):
            logger.debug(f"Field 0x{field_id:02x} overruns payload, dropping remaining fields")
            break

        decoder = FIELD_DECODERS.get(field_id)
        if decoder:
            attr, decode = decoder
            values[attr] = decode(payload[offset + 2:data_end])

        offset = data_end

    return values


def decode_records(frame: Frame) -> List[DataRecord]:
    """Decode every sub-record of a DATA_RECORDS frame, in payload order"""
    records = []
    payload = frame.raw[HEADER_SIZE:]
    offset = 0

    while offset < len(payload):
        if offset + RECORD_HEADER_SIZE > len(payload):
            break

        record_len = struct.unpack_from('<H', payload, offset)[0]
        if record_len < RECORD_HEADER_SIZE or offset + record_len > len(payload):
            logger.debug(f"Invalid sub-record length {record_len} at offset {offset}, discarding rest of frame")
            break

        timestamp = struct.unpack_from('<I', payload, offset + 6)[0]
        fields = _decode_fields(payload, offset + RECORD_HEADER_SIZE, offset + record_len)
        records.append(DataRecord(timestamp=timestamp, **fields))

        offset += record_len

    return records
