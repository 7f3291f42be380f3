"""
Defines types to use in the caching interface.

These types are as simple as possible in order to most conveniently consume and
produce instances of them.
"""

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlencode


@dataclass(frozen=True)
class TextBody:
    """
    A request body given as a string. It is sent UTF-8 encoded.
    """
    text: str


@dataclass(frozen=True)
class FormBody:
    """
    An `application/x-www-form-urlencoded` request body.
    """
    fields: Union[Mapping[str, Any], Sequence[Tuple[str, Any]]]

    def encode(self) -> str:
        return urlencode(self.fields, doseq=True)


@dataclass(frozen=True)
class FileBody:
    """
    A request body streamed from a file on disk.

    The file is identified by its path, not its contents.
    """
    path: Union[str, Path]


@dataclass(frozen=True)
class MultipartField:
    name: str
    value: Union[str, bytes]
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class MultipartBody:
    """
    A `multipart/form-data` request body.

    The boundary is random, so two bodies with the same fields are considered
    the same body regardless of their boundaries.
    """
    fields: Sequence[MultipartField]
    boundary: str = field(default_factory=lambda: os.urandom(16).hex())

    @property
    def content_type(self) -> str:
        return 'multipart/form-data; boundary={}'.format(self.boundary)

    def encode(self) -> bytes:
        parts = []
        for f in self.fields:
            disposition = 'form-data; name="{}"'.format(f.name)
            if f.filename is not None:
                disposition += '; filename="{}"'.format(f.filename)
            head = '--{}\r\nContent-Disposition: {}\r\n'.format(self.boundary, disposition)
            if f.content_type is not None:
                head += 'Content-Type: {}\r\n'.format(f.content_type)
            value = f.value.encode('utf-8') if isinstance(f.value, str) else f.value
            parts.append(head.encode('utf-8') + b'\r\n' + value + b'\r\n')
        parts.append('--{}--\r\n'.format(self.boundary).encode('utf-8'))
        return b''.join(parts)


@dataclass(frozen=True)
class BytesBody:
    data: bytes


Body = Union[None, TextBody, FormBody, FileBody, MultipartBody, BytesBody]


def coerce_body(body: Any) -> Any:
    """
    Wrap a plain `str` or `bytes` in its body kind. Anything else is returned as-is.
    """
    if isinstance(body, str):
        return TextBody(body)
    if isinstance(body, (bytes, bytearray)):
        return BytesBody(bytes(body))
    return body


@dataclass(frozen=True)
class Request:
    """
    Represents a request along with every option that can affect caching.
    """

    url: str
    """
    The id of the resource being requested.
    """

    method: str = 'GET'
    """
    The HTTP method of the request. E.g., "GET".
    """

    headers: Mapping[str, Union[str, Sequence[str]]] = field(default_factory=dict)
    """
    All the headers being sent with the request.
    """

    body: Body = None

    cache: str = 'default'
    credentials: str = 'same-origin'
    destination: str = ''
    integrity: str = ''
    redirect: str = 'follow'
    referrer: str = 'about:client'
    referrer_policy: str = ''

    options: Mapping[str, Any] = field(default_factory=dict)
    """
    Any other options for the transport, e.g. `timeout`. Those that are
    serializable to JSON take part in the cache key.
    """

    agent: Any = field(default=None, compare=False, repr=False)
    """
    A transport-only handle, such as a `requests.Session`. Never part of the
    cache key.
    """

    transport_options: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)
    """
    Options handed to the transport as they are, e.g. `auth` or `hooks`. Never
    part of the cache key.
    """


@dataclass(frozen=True)
class ResponseMetadata:
    """
    Everything about a response except its body.
    """

    url: str
    status: int
    status_text: str
    headers: Dict[str, List[str]]
    """
    Lowercased header names mapped to their values, in the order received.
    """

    size: int = 0
    """
    The declared size of the body, or 0 if it was not declared.
    """

    counter: int = 0
    """
    The number of redirects that were followed to get this response.
    """


@dataclass
class CachedValue:
    """
    A stored response: its metadata and a freshly-readable body stream.
    """
    body: BinaryIO = field(compare=False)
    metadata: ResponseMetadata


@dataclass
class TransportResponse:
    """
    The result of actually fetching a request over the network.
    """

    status: int
    status_text: str
    url: str
    headers: Dict[str, List[str]]
    body: BinaryIO = field(compare=False)
    counter: int = 0
    size: int = 0
    release: Optional[Callable[[], None]] = field(default=None, compare=False, repr=False)
    """
    Hands the underlying connection back to the transport once the body is read. Closing the body is enough when
    this is not set.
    """

    def close(self) -> None:
        if self.release is not None:
            self.release()
        else:
            self.body.close()

    def to_metadata(self) -> ResponseMetadata:
        return ResponseMetadata(url=self.url,
                                status=self.status,
                                status_text=self.status_text,
                                headers={name.lower(): list(values) for name, values in self.headers.items()},
                                size=self.size,
                                counter=self.counter)
