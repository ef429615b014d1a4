"""com.atproto.repo.describeRepo output, used for PDS resolution."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from social.graze.xrpc.model.session import DidDocument

DESCRIBE_REPO = "com.atproto.repo.describeRepo"


class DescribeRepoOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    handle: str
    did: str
    did_doc: DidDocument = Field(alias="didDoc")
    collections: List[str] = Field(default_factory=list)
    handle_is_correct: Optional[bool] = Field(default=None, alias="handleIsCorrect")
