"""Authenticated session snapshot and DID document models."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"


class DidService(BaseModel):
    """A service entry of a DID document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    type: str
    service_endpoint: str = Field(alias="serviceEndpoint")


class DidDocument(BaseModel):
    """The subset of a DID document used to locate an actor's PDS."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    also_known_as: List[str] = Field(default_factory=list, alias="alsoKnownAs")
    service: List[DidService] = Field(default_factory=list)

    @property
    def pds_endpoint(self) -> Optional[str]:
        """The AtprotoPersonalDataServer endpoint, falling back to the first service."""
        pds = next((s for s in self.service if s.type == PDS_SERVICE_TYPE), None)
        if pds is None:
            pds = next(iter(self.service), None)
        if pds is None:
            return None
        return pds.service_endpoint

    @property
    def handle(self) -> Optional[str]:
        aka = next((a for a in self.also_known_as if a.startswith("at://")), None)
        if aka is None:
            return None
        return aka.removeprefix("at://")


class Session(BaseModel):
    """
    Immutable snapshot of an authenticated identity.

    A refresh never mutates a session; it produces a new one for the same DID
    (see `with_tokens`) which the owning session manager swaps in.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    did: str
    handle: str
    access_jwt: str = Field(alias="accessJwt")
    refresh_jwt: str = Field(alias="refreshJwt")
    email: Optional[str] = None
    active: Optional[bool] = None
    did_doc: Optional[DidDocument] = Field(default=None, alias="didDoc")

    @property
    def pds_endpoint(self) -> Optional[str]:
        if self.did_doc is None:
            return None
        return self.did_doc.pds_endpoint

    def with_tokens(
        self,
        access_jwt: str,
        refresh_jwt: str,
        handle: Optional[str] = None,
        did_doc: Optional[DidDocument] = None,
    ) -> "Session":
        update = {"access_jwt": access_jwt, "refresh_jwt": refresh_jwt}
        if handle is not None:
            update["handle"] = handle
        if did_doc is not None:
            update["did_doc"] = did_doc
        return self.model_copy(update=update)

    def __repr__(self) -> str:
        # Tokens stay out of logs.
        return f"Session(did={self.did!r}, handle={self.handle!r})"
