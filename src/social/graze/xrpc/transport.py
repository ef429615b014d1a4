"""
Typed XRPC transport.

Every operation returns a `Result`: non-success responses are translated by
`create_error` into `Err`, success bodies are decoded with pydantic into the
requested type. Network failures raise `XrpcNetworkException` and a fired
cancellation signal raises `RequestCancelledException`.
"""

import asyncio
import contextlib
import logging
import os
from functools import lru_cache
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from aiohttp import ClientError, ClientResponse, ClientTimeout, StreamReader, hdrs
from pydantic import BaseModel, TypeAdapter

from social.graze.xrpc.chain import ChainMiddlewareClient, ChainResponse
from social.graze.xrpc.errors import (
    RequestCancelledException,
    XrpcNetworkException,
    create_error,
)
from social.graze.xrpc.result import Blob, Err, Ok, Result, Success

T = TypeVar("T")
R = TypeVar("R")

RecordCallback = Callable[..., Any]
StreamDecoder = Callable[[StreamReader, Optional[RecordCallback]], Awaitable[Any]]
StreamBody = Union[bytes, AsyncIterable[bytes], Any]
Params = Mapping[str, Any]


EMPTY_BODY = "{}"
DOWNLOAD_CHUNK_SIZE = 64 * 1024


@lru_cache(maxsize=256)
def _adapter(response_type: Any) -> TypeAdapter:
    return TypeAdapter(response_type)


def encode_body(body: Union[BaseModel, Mapping[str, Any]]) -> Any:
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(body)


def encode_params(params: Optional[Params]) -> Optional[Dict[str, Any]]:
    """Drop unset parameters and render booleans the way XRPC servers expect."""
    if params is None:
        return None
    encoded: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            encoded[key] = [str(v) for v in value]
        else:
            encoded[key] = str(value)
    return encoded


class Transport:
    """
    Generic GET/POST/streaming operations against one base URL.

    A transport is bound to the middleware client of the session manager that
    created it, so the credentials a call carries are fixed when the call
    starts.
    """

    def __init__(
        self,
        client: ChainMiddlewareClient,
        base_url: str,
        logger: Optional[logging.Logger] = None,
        timeout: Optional[ClientTimeout] = None,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def get(
        self,
        path: str,
        response_type: Type[T],
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[T]:
        """GET an XRPC query and decode the response.

        An empty success body decodes as `{}`.

        Args:
            path: Path below the base URL, or an absolute URL
            response_type: Type the JSON response is validated into
            params: Query parameters, see `encode_params`
            headers: Extra request headers
            cancellation: Signal that abandons the call

        Returns:
            Ok with the decoded response, or Err with the translated XRPC error

        Raises:
            XrpcNetworkException: On connection failures and timeouts
            RequestCancelledException: If `cancellation` fires first
            pydantic.ValidationError: If a success body does not match `response_type`
        """
        url = self.url_for(path)
        self._logger.debug(f"GET {url}")
        async with self._request(
            hdrs.METH_GET, url, cancellation, params=encode_params(params), headers=headers
        ) as (response, chain_response):
            if not chain_response.ok:
                return Err(await create_error(response, self._logger))
            return await self._decode(response, response_type, url, cancellation)

    async def get_blob(
        self,
        path: str,
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Blob]:
        """GET a binary response, keeping its content type.

        Returns:
            Ok with the bytes read in full, or Err with the translated XRPC error
        """
        url = self.url_for(path)
        self._logger.debug(f"GET {url}")
        async with self._request(
            hdrs.METH_GET, url, cancellation, params=encode_params(params), headers=headers
        ) as (response, chain_response):
            if not chain_response.ok:
                return Err(await create_error(response, self._logger))
            data = await self._wait(response.read(), hdrs.METH_GET, url, cancellation)
            content_type = response.headers.get(
                hdrs.CONTENT_TYPE, "application/octet-stream"
            )
            self._logger.debug(f"GET BLOB {url}: {len(data)} bytes")
            return Ok(Blob(data=data, content_type=content_type))

    async def get_stream_decode(
        self,
        path: str,
        decoder: StreamDecoder,
        on_record: Optional[RecordCallback] = None,
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Success]:
        """Hand the live response stream to `decoder` without buffering it.

        Only an error body is read in full, before failing.

        Args:
            path: Path below the base URL, or an absolute URL
            decoder: `async def decoder(stream, on_record)`, e.g. a CAR reader
            on_record: Passed through to `decoder` for each decoded record
            params: Query parameters, see `encode_params`
            headers: Extra request headers
            cancellation: Signal that abandons the call, decoding included

        Returns:
            Ok(Success()) once `decoder` returns, or Err with the translated XRPC error
        """
        url = self.url_for(path)
        self._logger.debug(f"GET STREAM {url}")
        async with self._request(
            hdrs.METH_GET, url, cancellation, params=encode_params(params), headers=headers
        ) as (response, chain_response):
            if not chain_response.ok:
                return Err(await create_error(response, self._logger))
            await self._wait(
                decoder(response.content, on_record), hdrs.METH_GET, url, cancellation
            )
            return Ok(Success())

    async def download(
        self,
        path: str,
        destination: Union[str, os.PathLike],
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Success]:
        """Stream a response body to `destination` chunk by chunk.

        The file is only created for a success response.

        Args:
            path: Path below the base URL, or an absolute URL
            destination: File to write, replaced if it exists
            params: Query parameters, see `encode_params`
            headers: Extra request headers
            cancellation: Signal that abandons the call

        Returns:
            Ok(Success()) once the body is written, or Err with the translated XRPC error
        """
        url = self.url_for(path)
        self._logger.debug(f"GET {url} -> {destination}")
        async with self._request(
            hdrs.METH_GET, url, cancellation, params=encode_params(params), headers=headers
        ) as (response, chain_response):
            if not chain_response.ok:
                return Err(await create_error(response, self._logger))
            with open(destination, "wb") as fd:
                while True:
                    chunk = await self._wait(
                        response.content.read(DOWNLOAD_CHUNK_SIZE),
                        hdrs.METH_GET,
                        url,
                        cancellation,
                    )
                    if not chunk:
                        break
                    fd.write(chunk)
            return Ok(Success())

    async def post(
        self,
        path: str,
        response_type: Type[T],
        body: Optional[Union[BaseModel, Mapping[str, Any]]] = None,
        form: Optional[Mapping[str, str]] = None,
        stream: Optional[StreamBody] = None,
        content_type: Optional[str] = None,
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[T]:
        """POST to an XRPC procedure and decode the response.

        At most one of `body`, `form` and `stream` may be given; with none of
        them the request is sent without a body.

        Args:
            path: Path below the base URL, or an absolute URL
            response_type: Type the JSON response is validated into
            body: JSON body; pydantic models are dumped by alias without unset fields
            form: Form-encoded body, as used by OAuth endpoints
            stream: Raw body, bytes or an async iterable of bytes
            content_type: Content type of `stream`, `application/octet-stream` by default
            params: Query parameters, see `encode_params`
            headers: Extra headers; an explicit `Authorization` wins over middleware
            cancellation: Signal that abandons the call

        Returns:
            Ok with the decoded response, or Err with the translated XRPC error

        Raises:
            ValueError: If more than one body is given
            XrpcNetworkException: On connection failures and timeouts
            RequestCancelledException: If `cancellation` fires first
        """
        if sum(x is not None for x in (body, form, stream)) > 1:
            raise ValueError("post takes at most one of body, form or stream")

        url = self.url_for(path)
        request_headers = dict(headers or {})
        kwargs: Dict[str, Any] = {"params": encode_params(params)}

        if body is not None:
            kwargs["json"] = encode_body(body)
            # Bodies carry credentials (createSession); only the URL is logged.
            self._logger.debug(f"POST JSON {url}")
        elif form is not None:
            kwargs["data"] = dict(form)
            self._logger.debug(f"POST FORM {url}")
        elif stream is not None:
            request_headers.setdefault(
                hdrs.CONTENT_TYPE, content_type or "application/octet-stream"
            )
            kwargs["data"] = stream
            self._logger.debug(f"POST STREAM {url}: {request_headers[hdrs.CONTENT_TYPE]}")
        else:
            self._logger.debug(f"POST {url}")

        async with self._request(
            hdrs.METH_POST, url, cancellation, headers=request_headers, **kwargs
        ) as (response, chain_response):
            if not chain_response.ok:
                return Err(await create_error(response, self._logger))
            return await self._decode(response, response_type, url, cancellation)

    async def _decode(
        self,
        response: ClientResponse,
        response_type: Type[T],
        url: str,
        cancellation: Optional[asyncio.Event],
    ) -> Result[T]:
        text = await self._wait(response.text(), response.method, url, cancellation)
        if not text:
            text = EMPTY_BODY
        self._logger.debug(f"{response.method} {url}: {response.status} {len(text)} chars")
        return Ok(_adapter(response_type).validate_json(text))

    @contextlib.asynccontextmanager
    async def _request(
        self,
        method: str,
        url: str,
        cancellation: Optional[asyncio.Event],
        **kwargs: Any,
    ) -> AsyncIterator[Tuple[ClientResponse, ChainResponse]]:
        if self._timeout is not None:
            kwargs.setdefault("timeout", self._timeout)

        context = self._client.request(method, url, **kwargs)
        try:
            response, chain_response = await self._wait(
                context.__aenter__(), method, url, cancellation
            )
        except (ClientError, asyncio.TimeoutError) as e:
            raise XrpcNetworkException(method, url, e) from e

        try:
            yield response, chain_response
        except (ClientError, asyncio.TimeoutError) as e:
            raise XrpcNetworkException(method, url, e) from e
        finally:
            await context.__aexit__(None, None, None)

    @staticmethod
    async def _wait(
        aw: Awaitable[R],
        method: str,
        url: str,
        cancellation: Optional[asyncio.Event],
    ) -> R:
        """Await `aw`, abandoning it if `cancellation` is set first."""
        if cancellation is None:
            return await aw

        task = asyncio.ensure_future(aw)
        if cancellation.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise RequestCancelledException(method, url)

        waiter = asyncio.ensure_future(cancellation.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledException(method, url)
