"""
Digital Matter binary protocol: framing, decoding and acknowledgments
"""
from .base import (
    DM_EPOCH,
    SYNC_MARKER,
    HEADER_SIZE,
    MAX_FRAME_SIZE,
    MessageType,
    FieldType,
    Frame,
    GPSReading,
    AnalogReading,
    DataRecord,
)
from .framing import ScanResult, StreamResult, StreamReassembler, scan_frame, process_stream
from .identity import extract_identity
from .records import decode_records, decode_gps_field, decode_analog16_field, decode_analog32_field
from .responses import encode_frame, build_response, protocol_time


__all__ = [
    'DM_EPOCH',
    'SYNC_MARKER',
    'HEADER_SIZE',
    'MAX_FRAME_SIZE',
    'MessageType',
    'FieldType',
    'Frame',
    'GPSReading',
    'AnalogReading',
    'DataRecord',
    'ScanResult',
    'StreamResult',
    'StreamReassembler',
    'scan_frame',
    'process_stream',
    'extract_identity',
    'decode_records',
    'decode_gps_field',
    'decode_analog16_field',
    'decode_analog32_field',
    'encode_frame',
    'build_response',
    'protocol_time',
]
