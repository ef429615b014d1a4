"""Handle and DID resolution without going through a PDS.

Handles resolve to DIDs through the `_atproto` DNS TXT record and the
`/.well-known/atproto-did` HTTPS endpoint; DIDs resolve to a DID document
through the PLC directory (`did:plc`) or the domain itself (`did:web`).

Lookups are best effort: failures are reported to sentry and surface as
`None`, never as exceptions.
"""

import asyncio
from enum import IntEnum
import logging
from typing import Optional

from aiodns import DNSResolver
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel, ValidationError
import sentry_sdk

from social.graze.xrpc.model.session import DidDocument

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    """Whether a subject is a DID (by method) or a handle needing resolution."""

    did_method_plc = 1
    did_method_web = 2
    hostname = 3
    did_method_other = 4


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str

    @property
    def is_did(self) -> bool:
        return self.subject_type != SubjectType.hostname


class ResolvedSubject(BaseModel):
    """A subject resolved all the way to its PDS."""

    did: str
    handle: str
    pds: str


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Classify a handle or DID, stripping `at://` and `@` prefixes.

    Args:
        subject: Handle or DID as typed by a user or found in an AT URI

    Returns:
        The classified subject with handles lowercased, None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")
    subject = subject.rstrip("/")

    if not subject:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)
    elif subject.startswith("did:"):
        return ParsedSubject(subject_type=SubjectType.did_method_other, subject=subject)

    # Handles are case-insensitive
    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Resolve a handle to a DID with its `_atproto.{handle}` TXT record.

    Records without the `did=` prefix are skipped.

    Args:
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if resolution fails
    """
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None

    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        if text.startswith("did="):
            return text.removeprefix("did=")
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle to a DID with its HTTPS well-known endpoint.

    Fetches `https://{handle}/.well-known/atproto-did`; the body must be a DID.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None on any failure
    """
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            if body.startswith("did:"):
                return body
            return None
    except (ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
        sentry_sdk.capture_exception(e)
        return None


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle with DNS and HTTPS concurrently, preferring DNS.

    Args:
        session: HTTP client session for the HTTPS lookup
        handle: AT Protocol handle to resolve

    Returns:
        DID from DNS if found, otherwise from HTTPS, None if neither resolves
    """
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle))

    did = dns_result.result()
    if did is not None:
        return did
    return http_result.result()


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    """Location of a DID document.

    `did:plc` documents live in the PLC directory; `did:web` documents on the
    named host, under `/.well-known/` unless the DID carries a path.

    Args:
        plc_hostname: Hostname of the PLC directory
        did: DID to locate

    Returns:
        Document URL, None for other DID methods
    """
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    return None


async def resolve_did_document(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[DidDocument]:
    """Fetch and validate a DID document.

    Args:
        session: HTTP client session
        plc_hostname: Hostname of the PLC directory for `did:plc` lookups
        did: DID to resolve

    Returns:
        The document, None if it is unavailable or malformed
    """
    url = did_document_url(plc_hostname, did)
    if url is None:
        logger.debug(f"Unsupported DID method: {did}")
        return None

    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                return None
            body = await resp.read()
    except (ClientError, asyncio.TimeoutError) as e:
        sentry_sdk.capture_exception(e)
        return None

    try:
        return DidDocument.model_validate_json(body)
    except ValidationError as e:
        sentry_sdk.capture_exception(e)
        return None


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[ResolvedSubject]:
    """Resolve a DID to its handle and PDS endpoint.

    Args:
        session: HTTP client session
        plc_hostname: Hostname of the PLC directory
        did: DID to resolve

    Returns:
        Resolved subject, None if the document lacks a handle or a PDS
    """
    did_doc = await resolve_did_document(session, plc_hostname, did)
    if did_doc is None:
        return None

    handle = did_doc.handle
    pds = did_doc.pds_endpoint
    if handle is None or pds is None:
        return None

    return ResolvedSubject(did=did, handle=handle, pds=pds)


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve a handle or DID to its DID, handle and PDS endpoint.

    Args:
        session: HTTP client session
        plc_hostname: Hostname of the PLC directory
        subject: Handle or DID, optionally prefixed with `at://` or `@`

    Returns:
        Resolved subject, None if any step fails
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        return None

    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle(session, parsed_subject.subject)
    else:
        did = parsed_subject.subject

    if did is None:
        logger.debug(f"Unable to resolve handle {parsed_subject.subject}")
        return None

    return await resolve_did(session, plc_hostname, did)
