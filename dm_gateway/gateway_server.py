"""
Digital Matter TCP gateway server
One asyncio protocol instance per device connection; decoded positions are
forwarded to Traccar in the background.
"""
import asyncio
import logging
import signal
import socket
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from dm_gateway.config import Settings
from dm_gateway.forwarder import PositionUpdate, TraccarForwarder
from dm_gateway.protocols import DataRecord, StreamReassembler

logger = logging.getLogger(__name__)

LOCAL_ADDRESSES = ('127.0.0.1', 'localhost', '::1')


class GatewayClientProtocol(asyncio.Protocol):
    """Handle one device connection"""

    def __init__(self, server: 'GatewayServer'):
        self.server = server
        self.settings = server.settings
        self.transport = None
        self.peername = None
        self.conn_id = None
        self.reassembler = StreamReassembler()
        self.last_activity = time.time()
        self.frame_count = 0
        self.timeout_task = None

    @property
    def device_id(self) -> Optional[str]:
        return self.reassembler.identity

    def connection_made(self, transport):
        self.transport = transport
        self.peername = transport.get_extra_info('peername')
        self.conn_id = f"{self.peername}_{time.time()}"
        self.server.active_connections[self.conn_id] = self

        sock = transport.get_extra_info('socket')
        if sock is not None:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        if self.peername and self.peername[0] not in LOCAL_ADDRESSES:
            logger.info(f"Device connected from {self.peername} (total: {len(self.server.active_connections)})")
        else:
            logger.debug(f"Local connection from {self.peername}")

        self.timeout_task = asyncio.create_task(self._monitor_timeout())

    def connection_lost(self, exc):
        if exc:
            logger.info(f"Device {self.device_id or 'unknown'} disconnected from {self.peername}: {exc}")
        else:
            logger.info(f"Device {self.device_id or 'unknown'} disconnected from {self.peername}")

        if self.timeout_task:
            self.timeout_task.cancel()

        self.server.active_connections.pop(self.conn_id, None)

    def data_received(self, data: bytes):
        self.last_activity = time.time()

        try:
            result = self.reassembler.feed(data)
        except Exception as e:
            logger.error(f"Error processing data from {self.peername}: {e}")
            self.server.stats['errors'] += 1
            self.transport.close()
            return

        self.frame_count += len(result.frames)
        self.server.stats['frames_received'] += len(result.frames)
        self.server.stats['records_decoded'] += len(result.records)

        for record in result.records:
            self._handle_record(record)

        for response in result.responses:
            if not self._write(response):
                return

        # Only the unconsumed tail counts; complete frames never overflow
        if self.reassembler.buffered > self.settings.MAX_BUFFER_SIZE:
            logger.warning(f"Buffer overflow from {self.peername} "
                           f"({self.reassembler.buffered} bytes retained), closing connection")
            self.server.stats['buffer_overflows'] += 1
            self.transport.close()

    def _handle_record(self, record: DataRecord):
        if record.gps is None or not record.gps.valid:
            return

        logger.info(f"Got GPS data from {self.device_id}: {record.gps.latitude:.6f}, {record.gps.longitude:.6f}")

        if not self.settings.TRACCAR_ENABLED or not self.device_id:
            return

        update = PositionUpdate.from_record(self.device_id, record)
        if update is not None:
            self.server.schedule_forward(update)

    def _write(self, response: bytes) -> bool:
        if not self.transport or self.transport.is_closing():
            return False

        try:
            self.transport.write(response)
        except Exception as e:
            logger.error(f"Write error to {self.peername}: {e}")
            self.transport.close()
            return False

        logger.debug(f"Sent {response.hex()} to {self.peername}")
        return True

    async def _monitor_timeout(self):
        """Close the connection once it has been idle for IDLE_TIMEOUT seconds"""
        try:
            while True:
                remaining = self.last_activity + self.settings.IDLE_TIMEOUT - time.time()
                if remaining <= 0:
                    logger.warning(f"Connection timeout for {self.peername}")
                    if self.transport and not self.transport.is_closing():
                        self.transport.close()
                    break
                await asyncio.sleep(remaining)

        except asyncio.CancelledError:
            pass


class GatewayServer:
    """TCP server for Digital Matter devices"""

    def __init__(self, settings: Settings, forwarder: Optional[TraccarForwarder] = None):
        self.settings = settings
        self.host = settings.HOST
        self.port = settings.PORT
        self.forwarder = forwarder or TraccarForwarder(settings.TRACCAR_URL, settings.FORWARD_TIMEOUT)
        self.server = None
        self.active_connections: Dict[str, GatewayClientProtocol] = {}
        self.forward_tasks: Set[asyncio.Task] = set()
        self.stats = {
            'start_time': None,
            'frames_received': 0,
            'records_decoded': 0,
            'positions_forwarded': 0,
            'forward_failures': 0,
            'buffer_overflows': 0,
            'errors': 0,
        }
        self.closing = False
        self.shutdown_event = asyncio.Event()

    async def start(self):
        """Start listening; returns once the socket is bound"""
        self.stats['start_time'] = datetime.now()
        loop = asyncio.get_running_loop()

        self.server = await loop.create_server(
            lambda: GatewayClientProtocol(self),
            self.host,
            self.port,
            reuse_address=True,
        )

        # Port 0 binds an ephemeral port
        self.port = self.server.sockets[0].getsockname()[1]

        logger.info(f"Digital Matter gateway listening on {self.host}:{self.port}")
        if self.settings.TRACCAR_ENABLED:
            logger.info(f"Traccar forwarding enabled: {self.settings.TRACCAR_URL}")
        logger.info(f"  - Idle timeout: {self.settings.IDLE_TIMEOUT}s")
        logger.info(f"  - Max buffer size: {self.settings.MAX_BUFFER_SIZE} bytes")

    async def serve_forever(self):
        """Run until SIGINT/SIGTERM or shutdown()"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        await self.start()
        await self.shutdown_event.wait()

    async def shutdown(self):
        """Close every connection, stop listening and flush forwarding"""
        if self.closing:
            return
        self.closing = True

        logger.info("Shutting down gateway...")

        for conn in list(self.active_connections.values()):
            if conn.transport and not conn.transport.is_closing():
                conn.transport.close()

        if self.server:
            self.server.close()
            await self.server.wait_closed()

        if self.forward_tasks:
            await asyncio.gather(*self.forward_tasks, return_exceptions=True)

        await self.forwarder.close()

        self.shutdown_event.set()
        logger.info("Gateway stopped")

    def schedule_forward(self, update: PositionUpdate):
        """Fire-and-forget submission of one position; dropped once shutdown starts"""
        if self.closing:
            logger.debug(f"Gateway shutting down, dropping position for {update.device_id}")
            return

        task = asyncio.create_task(self._forward(update))
        self.forward_tasks.add(task)
        task.add_done_callback(self.forward_tasks.discard)

    async def _forward(self, update: PositionUpdate):
        try:
            ok = await self.forwarder.forward(update)
        except Exception as e:
            logger.error(f"Unexpected forwarding error for {update.device_id}: {e}")
            ok = False

        if ok:
            self.stats['positions_forwarded'] += 1
        else:
            self.stats['forward_failures'] += 1

    def get_status(self) -> Dict[str, Any]:
        uptime = datetime.now() - self.stats['start_time'] if self.stats['start_time'] else timedelta(0)

        return {
            'running': self.server is not None and self.server.is_serving(),
            'uptime': str(uptime),
            'active_connections': len(self.active_connections),
            'frames_received': self.stats['frames_received'],
            'records_decoded': self.stats['records_decoded'],
            'positions_forwarded': self.stats['positions_forwarded'],
            'forward_failures': self.stats['forward_failures'],
            'connections': [
                {
                    'id': conn_id,
                    'device_id': conn.device_id,
                    'peername': str(conn.peername),
                    'frames': conn.frame_count,
                    'last_activity': datetime.fromtimestamp(conn.last_activity).isoformat(),
                }
                for conn_id, conn in self.active_connections.items()
            ],
        }
