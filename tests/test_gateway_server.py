import asyncio

from dm_gateway.device_simulator import (
    DeviceSimulator,
    build_analog16_field,
    build_commit_request,
    build_data_records,
    build_hello,
    build_record,
)
from dm_gateway.forwarder import PositionUpdate
from dm_gateway.gateway_server import GatewayClientProtocol, GatewayServer
from dm_gateway.protocols import MessageType, StreamReassembler, decode_records, encode_frame, scan_frame


async def _read_replies(reader, count, timeout=5.0):
    """Read until ``count`` reply frames have arrived"""
    reassembler = StreamReassembler()
    frames = []
    while len(frames) < count:
        chunk = await asyncio.wait_for(reader.read(1024), timeout=timeout)
        assert chunk, "connection closed early"
        frames.extend(reassembler.feed(chunk).frames)
    return frames


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


def _run(settings, recorder, scenario):
    async def main():
        server = GatewayServer(settings, forwarder=recorder)
        await server.start()
        try:
            return await scenario(server)
        finally:
            await server.shutdown()

    return asyncio.run(main())


def test_session_replies_and_forwards(settings, recorder, imei, hello_frame, data_frame):
    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)
        # Split across writes, including one cut inside the data frame
        stream = hello_frame + data_frame + build_commit_request()
        cut = len(hello_frame) + 7
        writer.write(stream[:cut])
        await writer.drain()
        await asyncio.sleep(0.05)
        writer.write(stream[cut:])
        await writer.drain()

        replies = await _read_replies(reader, 2)
        await _wait_for(lambda: recorder.updates)
        status = server.get_status()

        writer.close()
        await writer.wait_closed()
        return replies, status

    replies, status = _run(settings, recorder, scenario)

    assert [f.kind for f in replies] == [MessageType.HELLO_RESPONSE, MessageType.COMMIT_RESPONSE]
    assert replies[1].payload == b'\x01'

    assert len(recorder.updates) == 1
    update = recorder.updates[0]
    assert update.device_id == imei
    assert update.latitude == 50.0
    assert update.battery == 50.0

    assert status['frames_received'] == 3
    assert status['records_decoded'] == 2
    assert status['positions_forwarded'] == 1
    assert status['connections'][0]['device_id'] == imei
    assert recorder.closed


def test_no_forward_without_identity(settings, recorder, data_frame):
    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)
        writer.write(data_frame + encode_frame(MessageType.ASYNC_SESSION))
        await writer.drain()
        replies = await _read_replies(reader, 1)
        writer.close()
        await writer.wait_closed()
        return replies

    replies = _run(settings, recorder, scenario)

    assert replies[0].kind is MessageType.ASYNC_SESSION_COMPLETE
    assert recorder.updates == []


def test_no_forward_when_disabled(settings, recorder, hello_frame, data_frame):
    settings = settings.model_copy(update={'TRACCAR_ENABLED': False})

    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)
        writer.write(hello_frame + data_frame + build_commit_request())
        await writer.drain()
        await _read_replies(reader, 2)
        writer.close()
        await writer.wait_closed()

    _run(settings, recorder, scenario)

    assert recorder.updates == []


def test_buffer_overflow_closes_connection(settings, recorder):
    settings = settings.model_copy(update={'MAX_BUFFER_SIZE': 64})

    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)
        # Declares a 1000-byte payload that never completes
        writer.write(b'\x02\x55\x04\xe8\x03' + bytes(40))
        await writer.drain()
        writer.write(bytes(40))
        await writer.drain()
        data = await asyncio.wait_for(reader.read(1024), timeout=5.0)
        return data, server.stats['buffer_overflows']

    data, overflows = _run(settings, recorder, scenario)

    assert data == b''
    assert overflows == 1


def test_idle_timeout_closes_connection(settings, recorder, imei):
    settings = settings.model_copy(update={'IDLE_TIMEOUT': 1})

    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)
        writer.write(build_hello(imei))
        await writer.drain()
        await _read_replies(reader, 1)
        return await asyncio.wait_for(reader.read(1024), timeout=5.0)

    assert _run(settings, recorder, scenario) == b''


def test_device_simulator_session(settings, recorder, imei):
    async def scenario(server):
        device = DeviceSimulator(imei=imei, host='127.0.0.1', port=server.port)
        await device.run_session(record_count=3)
        await _wait_for(lambda: len(recorder.updates) == 3)

    _run(settings, recorder, scenario)

    assert {u.device_id for u in recorder.updates} == {imei}
    assert all(u.battery is not None for u in recorder.updates)


class _Transport:
    """Records writes so one read can be handed straight to data_received"""

    def __init__(self):
        self.written = []
        self.closed = False

    def get_extra_info(self, name, default=None):
        return ('10.0.0.5', 40000) if name == 'peername' else default

    def write(self, data):
        self.written.append(data)

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


def test_large_read_of_complete_frames_is_processed(settings, recorder, imei):
    # Battery-only records: decoded but not forwarded
    records = [build_record(2000 + i, [build_analog16_field(battery_mv=3900)]) for i in range(3700)]
    data = build_data_records(records)
    blob = build_hello(imei) + data * 3 + build_commit_request()
    assert len(blob) > settings.MAX_BUFFER_SIZE

    async def main():
        server = GatewayServer(settings, forwarder=recorder)
        transport = _Transport()
        protocol = GatewayClientProtocol(server)
        protocol.connection_made(transport)
        protocol.data_received(blob)
        protocol.connection_lost(None)
        return transport, server.stats

    transport, stats = asyncio.run(main())

    assert not transport.closed
    replies = StreamReassembler().feed(b''.join(transport.written)).frames
    assert [f.kind for f in replies] == [MessageType.HELLO_RESPONSE, MessageType.COMMIT_RESPONSE]
    assert stats['frames_received'] == 5
    assert stats['records_decoded'] == 3 * 3700
    assert stats['buffer_overflows'] == 0


def test_no_forward_after_shutdown(settings, recorder, imei, data_frame):
    record = decode_records(scan_frame(data_frame).frame)[0]

    async def main():
        server = GatewayServer(settings, forwarder=recorder)
        await server.start()
        await server.shutdown()
        server.schedule_forward(PositionUpdate.from_record(imei, record))
        await asyncio.sleep(0)
        return server

    server = asyncio.run(main())

    assert not server.forward_tasks
    assert recorder.updates == []


def test_simulator_keeps_replies_that_arrive_together(imei):
    async def main():
        async def handle(reader, writer):
            await reader.read(1024)
            # Both replies in a single write
            writer.write(encode_frame(MessageType.HELLO_RESPONSE, bytes(8))
                         + encode_frame(MessageType.COMMIT_RESPONSE, b'\x01'))
            await writer.drain()
            await reader.read(1024)
            writer.close()

        device_server = await asyncio.start_server(handle, '127.0.0.1', 0)
        port = device_server.sockets[0].getsockname()[1]
        device = DeviceSimulator(imei=imei, host='127.0.0.1', port=port)
        try:
            await device.connect()
            first = await device.send(build_hello(imei))
            second = await device.read_reply()
            await device.disconnect()
        finally:
            device_server.close()
            await device_server.wait_closed()
        return first, second

    first, second = asyncio.run(main())

    assert scan_frame(first).frame.kind is MessageType.HELLO_RESPONSE
    assert scan_frame(second).frame.kind is MessageType.COMMIT_RESPONSE
    assert scan_frame(second).frame.payload == b'\x01'
