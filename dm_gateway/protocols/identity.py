"""
Device identity (IMEI) extraction from HELLO frames
"""
import logging

from .base import Frame, MessageType

logger = logging.getLogger(__name__)

# Identifier starts after the 5-byte envelope and the 4-byte serial field
IDENTITY_OFFSET = 9


def extract_identity(frame: Frame) -> str:
    """
    Read the NUL-terminated device identifier from a HELLO frame.
    Returns an empty string for other message types, short frames, or
    when the terminator comes first.
    """
    if frame.kind is not MessageType.HELLO or len(frame.raw) < IDENTITY_OFFSET:
        return ""

    data = frame.raw
    end = data.find(b'\x00', IDENTITY_OFFSET)
    if end == -1:
        end = len(data)

    if end == IDENTITY_OFFSET:
        return ""

    identity = data[IDENTITY_OFFSET:end].decode('ascii', errors='replace')
    logger.debug(f"Extracted device identity: {identity}")
    return identity
