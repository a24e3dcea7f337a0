#!/usr/bin/env python3
"""
Digital Matter device simulator
Connects to the gateway, says HELLO, uploads a batch of GPS records and
commits, the same way a real tracker does after waking up.
"""
import asyncio
import logging
import random
import struct
import sys
import time
from typing import Iterable, List, Optional

from dm_gateway.protocols import DM_EPOCH, FieldType, MessageType, encode_frame, scan_frame

logger = logging.getLogger(__name__)


def build_hello(imei: str, serial: int = 0) -> bytes:
    """HELLO frame: [serial:4][imei, NUL padded to 16 bytes]"""
    payload = struct.pack('<I', serial) + imei.encode('ascii').ljust(16, b'\x00')
    return encode_frame(MessageType.HELLO, payload)


def build_gps_field(lat: float, lon: float, timestamp: int = 0, altitude: int = 0,
                    speed: int = 0, heading: int = 0, pdop: int = 0, accuracy: int = 0) -> bytes:
    data = struct.pack('<IiihH', timestamp, round(lat * 10000000), round(lon * 10000000), altitude, speed)
    data += bytes([0, heading, pdop, accuracy, 0])
    return bytes([FieldType.GPS, len(data)]) + data


def build_analog16_field(battery_mv: Optional[int] = None, **channels: int) -> bytes:
    """Analog field; extra channels are passed as ch<N>=value"""
    data = b''
    if battery_mv is not None:
        data += struct.pack('<Bh', 1, battery_mv)
    for name, value in channels.items():
        data += struct.pack('<Bh', int(name.lstrip('ch')), value)
    return bytes([FieldType.ANALOG_16, len(data)]) + data


def build_record(timestamp: int, fields: Iterable[bytes] = (), sequence: int = 0) -> bytes:
    """Sub-record: [length:2][sequence:4][timestamp:4][reason:1][fields]"""
    body = b''.join(fields)
    header = struct.pack('<HIIB', 11 + len(body), sequence, timestamp, 0)
    return header + body


def build_data_records(records: Iterable[bytes]) -> bytes:
    return encode_frame(MessageType.DATA_RECORDS, b''.join(records))


def build_commit_request() -> bytes:
    return encode_frame(MessageType.COMMIT_REQUEST)


def build_async_session() -> bytes:
    return encode_frame(MessageType.ASYNC_SESSION)


class DeviceSimulator:
    """Simulates one tracker upload session"""

    def __init__(self, imei: str = "353785725680796", host: str = "127.0.0.1", port: int = 20200):
        self.imei = imei
        self.host = host
        self.port = port
        self.reader = None
        self.writer = None
        self.rx_buffer = b''

        # Starting position (Zurich area)
        self.lat = 47.3769 + random.uniform(-0.01, 0.01)
        self.lon = 8.5417 + random.uniform(-0.01, 0.01)

    async def connect(self):
        logger.info(f"Device {self.imei}: Connecting to {self.host}:{self.port}...")
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port)

    async def disconnect(self):
        if self.writer:
            self.writer.close()
            await self.writer.wait_closed()
            logger.info(f"Device {self.imei}: Disconnected")

    async def send(self, frame: bytes, expect_reply: bool = True) -> Optional[bytes]:
        """Send one frame and read back a single reply frame"""
        self.writer.write(frame)
        await self.writer.drain()
        logger.debug(f"Device {self.imei} TX: {frame.hex()}")

        if not expect_reply:
            return None
        return await self.read_reply()

    async def read_reply(self) -> Optional[bytes]:
        """Next reply frame; bytes after it stay buffered for the following call"""
        while True:
            reply, offset = scan_frame(self.rx_buffer)
            if reply is not None:
                self.rx_buffer = self.rx_buffer[offset:]
                logger.debug(f"Device {self.imei} RX: {reply.raw.hex()}")
                return reply.raw

            chunk = await asyncio.wait_for(self.reader.read(1024), timeout=5.0)
            if not chunk:
                return None
            self.rx_buffer += chunk

    def generate_records(self, count: int) -> List[bytes]:
        now = int(time.time()) - DM_EPOCH
        records = []
        for i in range(count):
            self.lat += random.uniform(-0.0005, 0.0005)
            self.lon += random.uniform(-0.0005, 0.0005)
            gps = build_gps_field(self.lat, self.lon, timestamp=now + i, altitude=408,
                                  speed=random.randint(0, 40), heading=random.randint(1, 63),
                                  pdop=12, accuracy=5)
            analog = build_analog16_field(battery_mv=random.randint(3600, 4200))
            records.append(build_record(now + i, [gps, analog], sequence=i))
        return records

    async def run_session(self, record_count: int = 5):
        await self.connect()
        try:
            reply = await self.send(build_hello(self.imei))
            logger.info(f"Device {self.imei}: HELLO reply {reply.hex() if reply else None}")

            await self.send(build_data_records(self.generate_records(record_count)), expect_reply=False)
            logger.info(f"Device {self.imei}: Uploaded {record_count} records")

            reply = await self.send(build_commit_request())
            logger.info(f"Device {self.imei}: COMMIT reply {reply.hex() if reply else None}")
        finally:
            await self.disconnect()


async def main():
    host = sys.argv[1] if len(sys.argv) > 1 else "127.0.0.1"
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 20200
    await DeviceSimulator(host=host, port=port).run_session()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(main())
