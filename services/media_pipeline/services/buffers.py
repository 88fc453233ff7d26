from typing import List, Union
import logging

logger = logging.getLogger(__name__)


class BufferScope:
    """
    Owns sensitive byte buffers and zero-fills them when the scope exits.

    Buffers are adopted as bytearrays so they can be cleared in place; the
    scrub runs on every exit path, whether the block succeeded or raised.
    A buffer handed to another owner is removed with detach().
    """

    def __init__(self):
        self._buffers: List[bytearray] = []

    def adopt(self, data: Union[bytes, bytearray, memoryview]) -> bytearray:
        buffer = data if isinstance(data, bytearray) else bytearray(data)
        self._buffers.append(buffer)
        return buffer

    def detach(self, buffer: bytearray) -> bytearray:
        self._buffers = [b for b in self._buffers if b is not buffer]
        return buffer

    def scrub(self):
        for buffer in self._buffers:
            try:
                buffer[:] = bytes(len(buffer))
            except BufferError as e:
                logger.error(f"Could not clear buffer of {len(buffer)} bytes: {str(e)}")
        self._buffers.clear()

    def __len__(self) -> int:
        return len(self._buffers)

    def __enter__(self) -> "BufferScope":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.scrub()
        return False
