"""
Canonical Signature Schemas

A signature binds an actor to the content hash of one revision at one
moment. Records are append-only: the only change a record ever sees is
``is_valid`` flipping from True to False.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class SignatureRecord(BaseModel):
    """
    One signing event.

    At most one record per page is valid at any time.
    """
    signature_id: Optional[int] = Field(
        default=None,
        description="Store-assigned row id (None until persisted)"
    )

    page_id: int = Field(
        ...,
        description="Page in the host wiki"
    )

    revision_id: int = Field(
        ...,
        description="Exact revision that was signed"
    )

    signer_id: int = Field(
        ...,
        description="User who signed"
    )

    timestamp: datetime = Field(
        ...,
        description="When the signature was created (UTC)"
    )

    content_hash: str = Field(
        ...,
        min_length=1,
        description="SHA-1 of the revision text at signing time"
    )

    is_valid: bool = Field(
        default=True,
        description="Whether this is the page's authoritative signature"
    )

    remarks: Optional[str] = Field(
        default=None,
        description="Free-text annotation from the signer"
    )

    model_config = {"frozen": True}


class SignResult(BaseModel):
    """Successful outcome of a sign request."""
    page_id: int
    revision_id: int
    signer_id: int
    content_hash: str
    remarks: Optional[str] = None

    def to_api(self) -> dict:
        """Wire payload for the request layer."""
        return {
            "result": "success",
            "pageid": self.page_id,
            "revid": self.revision_id,
            "userid": self.signer_id,
            "hash": self.content_hash,
            "remarks": self.remarks,
        }


class PageSignatureStatus(BaseModel):
    """
    Authoritative signature state of a page's current revision.

    ``state`` is "signed" when a valid signature exists for the current
    revision and "awaiting" otherwise.
    """
    page_id: int
    current_revision_id: int
    target_type: Literal["group", "user"]
    target_value: str
    state: Literal["signed", "awaiting"]
    signature: Optional[SignatureRecord] = None
    can_sign: bool = False


class VerificationReport(BaseModel):
    """
    Drift check between a page's valid signature and its current content.

    ``drifted`` is True when a valid signature exists but no longer describes
    what the page currently holds (different revision with different text,
    or the signed text itself no longer hashes to the stored value).
    """
    page_id: int
    current_revision_id: int
    signature: Optional[SignatureRecord] = None
    hash_matches_signed_revision: Optional[bool] = None
    current_content_matches: Optional[bool] = None
    drifted: bool = False
