"""Wire codec for terminal byte streams.

Converts between the text a terminal widget consumes/produces and the byte
sequences that travel over the command bridge.

Usage:
    from termbridge.codec import encode, decode, StreamDecoder

    data = encode("ls\\n")          # b"ls\\n"
    text = decode(data)            # "ls\\n"

    decoder = StreamDecoder()
    decoder.feed(b"\\xe6\\x97")      # "" (incomplete multi-byte sequence held)
    decoder.feed(b"\\xa5")          # "日"

Bytes are carried in JSON as a list of integers (0-255), the same shape the
backend emits on ``terminal-output-{agent_id}`` channels.
"""

import base64
import codecs
from typing import Any, List, Union

ENCODING = "utf-8"


def encode(text: str) -> bytes:
    """Encode text into the byte sequence sent to the backend."""
    return text.encode(ENCODING)


def decode(data: bytes) -> str:
    """Decode a complete byte sequence into text.

    Invalid sequences are replaced with U+FFFD rather than raising, since
    backend output is arbitrary process output.
    """
    return data.decode(ENCODING, errors="replace")


class StreamDecoder:
    """Incremental decoder for chunked terminal output.

    The backend may split a multi-byte character across two output events.
    A stateless per-chunk decode would render two replacement characters;
    this decoder keeps the undecoded trailing bytes until the rest arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder(ENCODING)(errors="replace")

    def feed(self, chunk: bytes) -> str:
        """Decode a chunk, holding back an incomplete trailing sequence."""
        return self._decoder.decode(chunk, final=False)

    def flush(self) -> str:
        """Emit whatever is still buffered (as replacement chars if partial)."""
        return self._decoder.decode(b"", final=True)

    def reset(self) -> None:
        """Discard any buffered bytes."""
        self._decoder.reset()

    @property
    def pending(self) -> bool:
        """True if a partial sequence is being held."""
        buffered, _ = self._decoder.getstate()
        return bool(buffered)


def to_wire(data: bytes) -> List[int]:
    """Convert bytes to their JSON wire form (list of ints)."""
    return list(data)


def from_wire(payload: Union[List[int], bytes, bytearray, str, Any]) -> bytes:
    """Convert a wire payload back into bytes.

    Accepts a list of ints (the native form), raw bytes, or a base64 string.

    Raises:
        ValueError: If the payload is not one of the accepted shapes or a
            list element is outside 0-255.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, list):
        try:
            return bytes(payload)
        except TypeError as e:
            raise ValueError(f"Invalid byte list payload: {e}") from e
    if isinstance(payload, str):
        try:
            return base64.b64decode(payload, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
    raise ValueError(f"Unsupported wire payload type: {type(payload).__name__}")


__all__ = [
    "ENCODING",
    "StreamDecoder",
    "decode",
    "encode",
    "from_wire",
    "to_wire",
]
