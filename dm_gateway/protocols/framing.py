"""
Frame scanning and per-connection stream reassembly

Devices deliver frames in arbitrary TCP chunks. The scanner finds complete
frames inside an accumulated buffer; the reassembler keeps the unconsumed
tail between reads and dispatches each frame by message type.
"""
import struct
import logging
from typing import Callable, Dict, List, NamedTuple, Optional

from .base import HEADER_SIZE, SYNC_MARKER, DataRecord, Frame, MessageType
from .identity import extract_identity
from .records import decode_records
from .responses import build_response

logger = logging.getLogger(__name__)


class ScanResult(NamedTuple):
    """Outcome of one scan: a frame (or None for "need more bytes") and the resume offset"""
    frame: Optional[Frame]
    offset: int


def scan_frame(buffer: bytes, offset: int = 0) -> ScanResult:
    """
    Locate the next complete frame at or after ``offset``.

    Bytes that do not start a sync marker are skipped one at a time. When the
    buffer ends before a frame is complete, the result carries no frame and
    the offset is where scanning must resume once more bytes arrive.
    """
    size = len(buffer)
    skipped = 0

    while offset + len(SYNC_MARKER) <= size:
        if buffer[offset] != SYNC_MARKER[0] or buffer[offset + 1] != SYNC_MARKER[1]:
            offset += 1
            skipped += 1
            continue

        if skipped:
            logger.debug(f"Skipped {skipped} bytes before sync marker")

        if offset + HEADER_SIZE > size:
            return ScanResult(None, offset)

        message_type = buffer[offset + 2]
        payload_len = struct.unpack_from('<H', buffer, offset + 3)[0]
        end = offset + HEADER_SIZE + payload_len

        if end > size:
            return ScanResult(None, offset)

        raw = bytes(buffer[offset:end])
        frame = Frame(message_type=message_type, payload=raw[HEADER_SIZE:], raw=raw)
        return ScanResult(frame, end)

    if skipped:
        logger.debug(f"Skipped {skipped} bytes without finding a sync marker")
    return ScanResult(None, offset)


class StreamResult(NamedTuple):
    """Everything produced by one read event"""
    frames: List[Frame]
    records: List[DataRecord]
    responses: List[bytes]
    identity: Optional[str]
    tail: bytes


def _handle_hello(frame: Frame, state: dict):
    identity = extract_identity(frame)
    if identity and not state['identity']:
        state['identity'] = identity
        logger.info(f"Device identified as {identity}")


def _handle_data_records(frame: Frame, state: dict):
    state['records'].extend(decode_records(frame))


FRAME_HANDLERS: Dict[MessageType, Callable[[Frame, dict], None]] = {
    MessageType.HELLO: _handle_hello,
    MessageType.DATA_RECORDS: _handle_data_records,
}


def process_stream(pending: bytes, data: bytes, identity: Optional[str] = None,
                   now: Optional[float] = None) -> StreamResult:
    """
    Append ``data`` to the retained ``pending`` bytes and process every
    complete frame in arrival order.

    Returns the frames, decoded records, replies (in frame order), the
    connection identity (the first one reported wins) and the tail that must
    be passed back as ``pending`` on the next call.
    """
    buffer = pending + data if pending else bytes(data)
    state = {'identity': identity or None, 'records': []}
    frames = []
    responses = []
    offset = 0

    while True:
        frame, offset = scan_frame(buffer, offset)
        if frame is None:
            break

        frames.append(frame)
        logger.debug(f"Frame {frame.type_name} ({len(frame)} bytes)")

        handler = FRAME_HANDLERS.get(frame.kind)
        if handler:
            handler(frame, state)

        response = build_response(frame.message_type, now)
        if response is not None:
            responses.append(response)

    return StreamResult(
        frames=frames,
        records=state['records'],
        responses=responses,
        identity=state['identity'],
        tail=buffer[offset:],
    )


class StreamReassembler:
    """Per-connection owner of the retained buffer and device identity"""

    def __init__(self):
        self.pending = b""
        self.identity: Optional[str] = None

    def feed(self, data: bytes, now: Optional[float] = None) -> StreamResult:
        result = process_stream(self.pending, data, self.identity, now)
        self.pending = result.tail
        self.identity = result.identity
        return result

    @property
    def buffered(self) -> int:
        return len(self.pending)
