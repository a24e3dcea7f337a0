"""
Test Configuration
==================

Pytest fixtures shared by the gateway tests.
"""

import pytest

from dm_gateway.config import Settings
from dm_gateway.device_simulator import (
    build_analog16_field,
    build_data_records,
    build_gps_field,
    build_hello,
    build_record,
)

IMEI = "353785725680796"


class RecordingForwarder:
    """Stands in for TraccarForwarder and keeps every update it receives"""

    def __init__(self, ok=True):
        self.ok = ok
        self.updates = []
        self.closed = False

    async def forward(self, update):
        self.updates.append(update)
        return self.ok

    async def close(self):
        self.closed = True


@pytest.fixture
def imei():
    return IMEI


@pytest.fixture
def hello_frame():
    return build_hello(IMEI, serial=42)


@pytest.fixture
def gps_field():
    return build_gps_field(50.0, -1.25, timestamp=1000, altitude=120, speed=36,
                           heading=32, pdop=15, accuracy=4)


@pytest.fixture
def data_frame(gps_field):
    """DATA_RECORDS frame with two records: GPS + battery, then battery only"""
    return build_data_records([
        build_record(1000, [gps_field, build_analog16_field(battery_mv=3750)]),
        build_record(1060, [build_analog16_field(battery_mv=4100)]),
    ])


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        HOST="127.0.0.1",
        PORT=0,
        TRACCAR_URL="http://traccar.test:5055",
        TRACCAR_ENABLED=True,
        IDLE_TIMEOUT=30,
        MAX_BUFFER_SIZE=131072,
    )


@pytest.fixture
def recorder():
    return RecordingForwarder()
