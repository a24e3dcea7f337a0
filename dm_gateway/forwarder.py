"""
Position forwarding to Traccar (OsmAnd protocol)
Best effort: failures are logged and dropped, never retried.
"""
import asyncio
import logging
from typing import Dict, Optional

import aiohttp
from pydantic import BaseModel

from dm_gateway.protocols import DataRecord

logger = logging.getLogger(__name__)

KMH_TO_KNOTS = 0.539957
BATTERY_EMPTY_V = 3.0
BATTERY_FULL_V = 4.5


def battery_percent(voltage: float) -> float:
    """Linear voltage to percentage between the empty and full bounds, clamped"""
    percent = (voltage - BATTERY_EMPTY_V) / (BATTERY_FULL_V - BATTERY_EMPTY_V) * 100.0
    return max(0.0, min(100.0, percent))


class PositionUpdate(BaseModel):
    """One position submitted to the tracking platform"""
    device_id: str
    latitude: float
    longitude: float
    timestamp: int  # unix seconds
    altitude: Optional[int] = None
    speed: Optional[float] = None  # knots
    bearing: Optional[float] = None
    accuracy: Optional[int] = None
    hdop: Optional[float] = None
    battery: Optional[float] = None  # percent

    class Config:
        frozen = True

    @classmethod
    def from_record(cls, device_id: str, record: DataRecord) -> Optional['PositionUpdate']:
        """Build an update from a record; None when it has no valid GPS reading"""
        gps = record.gps
        if gps is None or not gps.valid:
            return None

        voltage = record.battery_voltage

        return cls(
            device_id=device_id,
            latitude=gps.latitude,
            longitude=gps.longitude,
            timestamp=record.unix_timestamp,
            altitude=gps.altitude if gps.altitude != 0 else None,
            speed=gps.ground_speed * KMH_TO_KNOTS if gps.ground_speed > 0 else None,
            bearing=gps.bearing % 360 if gps.heading > 0 else None,
            accuracy=gps.position_accuracy if gps.position_accuracy > 0 else None,
            hdop=gps.pdop_value if gps.pdop > 0 else None,
            battery=battery_percent(voltage) if voltage and voltage > 0 else None,
        )

    def to_query_params(self) -> Dict[str, str]:
        params = {
            'id': self.device_id,
            'lat': f"{self.latitude:.6f}",
            'lon': f"{self.longitude:.6f}",
            'timestamp': str(self.timestamp),
        }

        if self.altitude is not None:
            params['altitude'] = str(self.altitude)
        if self.speed is not None:
            params['speed'] = f"{self.speed:.2f}"
        if self.bearing is not None:
            params['bearing'] = f"{self.bearing:.1f}"
        if self.accuracy is not None:
            params['accuracy'] = str(self.accuracy)
        if self.hdop is not None:
            params['hdop'] = f"{self.hdop:.1f}"
        if self.battery is not None:
            params['batt'] = f"{self.battery:.1f}"

        params['valid'] = 'true'
        return params


class TraccarForwarder:
    """Submit position updates to a Traccar OsmAnd endpoint"""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None
        self.sent = 0
        self.failed = 0

    async def start(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def forward(self, update: PositionUpdate) -> bool:
        """Send one update; returns False on any failure"""
        await self.start()

        try:
            async with self.session.get(self.base_url, params=update.to_query_params()) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.warning(f"Traccar rejected position for {update.device_id}: status {response.status}: {body}")
                    self.failed += 1
                    return False

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Traccar forward error for {update.device_id}: {e}")
            self.failed += 1
            return False

        self.sent += 1
        logger.debug(f"Forwarded position for {update.device_id}: {update.latitude:.6f}, {update.longitude:.6f}")
        return True
