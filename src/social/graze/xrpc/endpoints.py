"""
XRPC calls the client core depends on.

These are thin wrappers over `Transport`; the full per-endpoint surface lives
outside this package and is built the same way.
"""

import asyncio
import os
from typing import Optional, Union

from social.graze.xrpc.model.repo import DESCRIBE_REPO, DescribeRepoOutput
from social.graze.xrpc.model.server import GET_SESSION, GetSessionOutput
from social.graze.xrpc.result import Blob, Result, Success
from social.graze.xrpc.transport import RecordCallback, StreamDecoder, Transport

SYNC_GET_REPO = "com.atproto.sync.getRepo"
SYNC_GET_BLOB = "com.atproto.sync.getBlob"


def xrpc_path(nsid: str) -> str:
    """Path of the XRPC method `nsid`, relative to a service base URL."""
    return f"/xrpc/{nsid}"


async def describe_repo(
    transport: Transport, repo: str, cancellation: Optional[asyncio.Event] = None
) -> Result[DescribeRepoOutput]:
    """Describe a repository, including the DID document locating its PDS.

    Args:
        transport: Transport of the service to ask
        repo: Handle or DID of the repository
        cancellation: Signal that abandons the call

    Returns:
        Ok with the description, or Err with the XRPC error
    """
    return await transport.get(
        xrpc_path(DESCRIBE_REPO),
        DescribeRepoOutput,
        params={"repo": repo},
        cancellation=cancellation,
    )


async def get_session(
    transport: Transport, cancellation: Optional[asyncio.Event] = None
) -> Result[GetSessionOutput]:
    """Session details (DID, handle, DID document) of the transport's credentials."""
    return await transport.get(
        xrpc_path(GET_SESSION), GetSessionOutput, cancellation=cancellation
    )


async def get_repo(
    transport: Transport,
    did: str,
    decoder: StreamDecoder,
    on_record: Optional[RecordCallback] = None,
    since: Optional[str] = None,
    cancellation: Optional[asyncio.Event] = None,
) -> Result[Success]:
    """Stream a repository CAR export through `decoder`.

    Args:
        transport: Transport of the PDS hosting the repository
        did: DID of the repository
        decoder: CAR decoder, called with the live response stream
        on_record: Passed through to `decoder`
        since: Only export changes after this revision
        cancellation: Signal that abandons the call

    Returns:
        Ok(Success()) once decoding finishes, or Err with the XRPC error
    """
    return await transport.get_stream_decode(
        xrpc_path(SYNC_GET_REPO),
        decoder,
        on_record=on_record,
        params={"did": did, "since": since},
        cancellation=cancellation,
    )


async def download_repo(
    transport: Transport,
    did: str,
    destination: Union[str, os.PathLike],
    cancellation: Optional[asyncio.Event] = None,
) -> Result[Success]:
    """Save a repository CAR export to `destination` without holding it in memory."""
    return await transport.download(
        xrpc_path(SYNC_GET_REPO),
        destination,
        params={"did": did},
        cancellation=cancellation,
    )


async def get_blob(
    transport: Transport,
    did: str,
    cid: str,
    cancellation: Optional[asyncio.Event] = None,
) -> Result[Blob]:
    """Fetch a blob by CID from the repository of `did`."""
    return await transport.get_blob(
        xrpc_path(SYNC_GET_BLOB),
        params={"did": did, "cid": cid},
        cancellation=cancellation,
    )
