"""
Acknowledgment frames sent back to the device
"""
import struct
import time
import logging
from typing import Optional

from .base import DM_EPOCH, SYNC_MARKER, MAX_PAYLOAD_SIZE, MessageType

logger = logging.getLogger(__name__)

COMMIT_ACCEPT = 0x01


def encode_frame(message_type: int, payload: bytes = b'') -> bytes:
    """Wrap a payload in the sync marker / type / length envelope"""
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"Payload too large: {len(payload)} bytes")
    return SYNC_MARKER + struct.pack('<BH', message_type, len(payload)) + payload


def protocol_time(now: Optional[float] = None) -> int:
    """Current time as seconds since the protocol epoch"""
    if now is None:
        now = time.time()
    return (int(now) - DM_EPOCH) & 0xFFFFFFFF


def build_hello_response(now: Optional[float] = None) -> bytes:
    # Device syncs its clock from the first 4 bytes; the rest is reserved
    payload = struct.pack('<I', protocol_time(now)) + bytes(4)
    return encode_frame(MessageType.HELLO_RESPONSE, payload)


def build_commit_response(now: Optional[float] = None) -> bytes:
    return encode_frame(MessageType.COMMIT_RESPONSE, bytes([COMMIT_ACCEPT]))


def build_async_session_complete(now: Optional[float] = None) -> bytes:
    return encode_frame(MessageType.ASYNC_SESSION_COMPLETE)


RESPONSE_BUILDERS = {
    MessageType.HELLO: build_hello_response,
    MessageType.COMMIT_REQUEST: build_commit_response,
    MessageType.ASYNC_SESSION: build_async_session_complete,
}


def build_response(message_type: int, now: Optional[float] = None) -> Optional[bytes]:
    """
    Build the reply for a received message type.
    Returns None for types the gateway does not acknowledge.
    """
    builder = RESPONSE_BUILDERS.get(message_type)
    if builder is None:
        return None

    response = builder(now)
    logger.debug(f"Built response for type 0x{message_type:02x}: {response.hex()}")
    return response
