import json
import logging
import threading
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from .model import ResponseMetadata
from .util import drain, iter_chunks, CHUNK_SIZE


logger = logging.getLogger(__name__)


class BodyAlreadyConsumed(Exception):
    def __init__(self, url: str):
        super().__init__('The body of the response for {} has already been consumed'.format(url))


class CachedResponse:
    """
    A response that was either fetched or replayed from a cache.

    The body can be read once, by exactly one of `text()`, `json()`, `content()`, `iter_content()` or `stream()`.
    """

    def __init__(self, body: BinaryIO, metadata: ResponseMetadata, eject: Callable[[], None],
                 from_cache: bool) -> None:
        self.__body = body
        self.__metadata = metadata
        self.__eject = eject
        self.__from_cache = from_cache
        self.__body_used = False
        self.__guard = threading.Lock()
        self.__headers = CaseInsensitiveDict(
            (name, ', '.join(values)) for name, values in metadata.headers.items())

    def __repr__(self) -> str:
        return '<CachedResponse [{}] {} from_cache={}>'.format(self.status, self.url, self.from_cache)

    # region Metadata

    @property
    def metadata(self) -> ResponseMetadata:
        return self.__metadata

    @property
    def status(self) -> int:
        return self.__metadata.status

    @property
    def status_text(self) -> str:
        return self.__metadata.status_text

    @property
    def url(self) -> str:
        return self.__metadata.url

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def redirected(self) -> bool:
        return self.__metadata.counter > 0

    @property
    def from_cache(self) -> bool:
        return self.__from_cache

    # endregion

    # region Headers

    @property
    def headers(self) -> CaseInsensitiveDict:
        """
        The headers, with repeated values joined by ", ".
        """
        return self.__headers

    def raw_headers(self) -> Dict[str, List[str]]:
        return {name: list(values) for name, values in self.__metadata.headers.items()}

    def get_header(self, name: str) -> Optional[str]:
        return self.__headers.get(name)

    def has_header(self, name: str) -> bool:
        return name in self.__headers

    def header_keys(self) -> Iterator[str]:
        return iter(self.__metadata.headers.keys())

    def header_values(self) -> Iterator[str]:
        return (self.__headers[name] for name in self.__metadata.headers)

    def header_entries(self) -> Iterator[Tuple[str, str]]:
        return ((name, self.__headers[name]) for name in self.__metadata.headers)

    # endregion

    # region Body

    @property
    def body_used(self) -> bool:
        return self.__body_used

    def _consume(self) -> BinaryIO:
        with self.__guard:
            if self.__body_used:
                raise BodyAlreadyConsumed(self.url)
            self.__body_used = True
        return self.__body

    def stream(self) -> BinaryIO:
        """
        Take the body stream itself. The caller becomes responsible for closing it.
        """
        return self._consume()

    def iter_content(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        body = self._consume()

        def generate():
            with body:
                yield from iter_chunks(body, chunk_size)
        return generate()

    def content(self) -> bytes:
        body = self._consume()
        with body:
            return drain(body)

    @property
    def encoding(self) -> str:
        return get_encoding_from_headers(self.__headers) or 'utf-8'

    def text(self) -> str:
        return self.content().decode(self.encoding, errors='replace')

    def json(self, **kwargs) -> Any:
        return json.loads(self.content(), **kwargs)

    def close(self) -> None:
        self.__body.close()

    # endregion

    def eject_from_cache(self) -> None:
        """
        Remove this response from the cache it was stored in. Does nothing if it is no longer there.
        """
        logger.info('Ejecting {} from the cache'.format(self.url))
        self.__eject()
