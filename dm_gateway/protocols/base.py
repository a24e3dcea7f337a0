"""
Shared types for the Digital Matter binary protocol
Frame envelope: [0x02][0x55][type:1][payload length:2 LE][payload]
"""
from enum import IntEnum
from typing import Optional

from pydantic import BaseModel


# Protocol epoch: 2013-01-01 00:00:00 UTC
DM_EPOCH = 1356998400

SYNC_MARKER = b'\x02\x55'
HEADER_SIZE = 5  # sync(2) + type(1) + length(2)
MAX_PAYLOAD_SIZE = 0xFFFF
MAX_FRAME_SIZE = HEADER_SIZE + MAX_PAYLOAD_SIZE


class MessageType(IntEnum):
    """Message type codes carried in byte 2 of every frame"""
    # Device -> gateway
    HELLO = 0x00
    DATA_RECORDS = 0x04
    COMMIT_REQUEST = 0x05
    VERSION = 0x14
    ASYNC_SESSION = 0x22
    SOCKET_CLOSE = 0x26

    # Gateway -> device
    HELLO_RESPONSE = 0x01
    COMMIT_RESPONSE = 0x06
    ASYNC_SESSION_COMPLETE = 0x23

    @classmethod
    def lookup(cls, code: int) -> Optional['MessageType']:
        """Return the enum member for a type code, None if unknown"""
        try:
            return cls(code)
        except ValueError:
            return None


class FieldType(IntEnum):
    """Field identifiers inside a data record"""
    GPS = 0x00
    ANALOG_16 = 0x06
    ANALOG_32 = 0x07


class Frame(BaseModel):
    """One complete frame as it appeared on the wire"""
    message_type: int
    payload: bytes
    raw: bytes

    class Config:
        frozen = True

    @property
    def kind(self) -> Optional[MessageType]:
        return MessageType.lookup(self.message_type)

    @property
    def type_name(self) -> str:
        kind = self.kind
        return kind.name if kind is not None else f"0x{self.message_type:02x}"

    def __len__(self) -> int:
        return len(self.raw)


class GPSReading(BaseModel):
    """GPS field decoded from a data record"""
    timestamp: int
    latitude: float
    longitude: float
    altitude: int
    ground_speed: int
    heading: int
    pdop: int
    position_accuracy: int
    valid: bool = True

    class Config:
        frozen = True

    @property
    def bearing(self) -> float:
        """Heading in degrees (5.625 degrees per unit, not wrapped)"""
        return self.heading * 5.625

    @property
    def pdop_value(self) -> float:
        return self.pdop / 10.0


class AnalogReading(BaseModel):
    """Analog field values; only the battery channel is surfaced"""
    battery_voltage: Optional[float] = None

    class Config:
        frozen = True


class DataRecord(BaseModel):
    """One timestamped sub-record from a DATA_RECORDS frame"""
    timestamp: int
    gps: Optional[GPSReading] = None
    analog: Optional[AnalogReading] = None

    class Config:
        frozen = True

    @property
    def unix_timestamp(self) -> int:
        return self.timestamp + DM_EPOCH

    @property
    def battery_voltage(self) -> Optional[float]:
        return self.analog.battery_voltage if self.analog else None
