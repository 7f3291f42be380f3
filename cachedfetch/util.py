import dataclasses
import json
from typing import BinaryIO, Iterator, Type


CHUNK_SIZE = 64 * 1024


def clamp(value, min, max):
    return sorted((min, value, max))[1]


def iter_chunks(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Read `stream` to exhaustion in chunks of at most `chunk_size` bytes.
    """
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


def drain(stream: BinaryIO) -> bytes:
    return b''.join(iter_chunks(stream))


class DataclassJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


class DataclassJSONDecoder(json.JSONDecoder):
    def __init__(self, class_type: Type, **kwargs) -> None:
        super().__init__(**kwargs)
        self.__class_type = class_type

    def decode(self, s):
        result = super().decode(s)
        return self.__class_type(**result)
