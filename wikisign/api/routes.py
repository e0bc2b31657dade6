"""
Signature API Routes

Command and query endpoints for page signatures.

Errors are reported as ``{"error": {"code": ..., "info": ...}}`` with one of
the machine-readable codes:
    notloggedin, nosuchpage, contentchanged, permissiondenied, nohash, dberror
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from pydantic import BaseModel

from .auth import current_actor, require_actor, require_csrf
from ..core import resolve_target
from ..schemas import PageSignatureStatus, SignatureRecord, VerificationReport

MODULE_NAME = "digitalsignature"

# Handlers are plain ``def`` and run in the threadpool: store calls block.
router = APIRouter(prefix="/api", tags=["Signatures"])


# ============================================================
# Request/Response Models
# ============================================================

class ContentChangedEvent(BaseModel):
    page_id: int
    revision_id: int
    ok: bool = True


class ContentChangedResponse(BaseModel):
    page_id: int
    revision_id: int
    invalidated: Optional[int]


class HistoryResponse(BaseModel):
    page_id: int
    signatures: list[SignatureRecord]


# ============================================================
# Helper Functions
# ============================================================

def get_services(request: Request):
    """Get the service bundle from app state."""
    return request.app.state.services


def require_hook_token(request: Request, token: Optional[str]) -> None:
    config = get_services(request).config
    if not config.hook_token:
        # Open only outside production
        if config.production:
            raise HTTPException(status_code=403, detail="Hook token not configured")
        return
    if not hmac.compare_digest(token or "", config.hook_token):
        raise HTTPException(status_code=403, detail="Invalid hook token")


# ============================================================
# Commands
# ============================================================

@router.post("/digitalsignature")
def sign_page(
    request: Request,
    pageid: int = Query(..., description="The ID of the page to sign."),
    revid: int = Query(..., description="The revision ID of the page to sign."),
    group: Optional[str] = Query(None, description="The user group authorized to sign this page."),
    user: Optional[str] = Query(None, description="The specific username authorized to sign this page."),
    remarks: Optional[str] = Query(None, description="Optional remarks for the digital signature."),
):
    """
    Sign the current revision of a page.

    Examples:
        POST /api/digitalsignature?pageid=123&revid=456&group=sysop
        POST /api/digitalsignature?pageid=123&revid=456&user=AdminUser
        POST /api/digitalsignature?pageid=123&revid=456&group=sysop&remarks=Approved+by+management
    """
    actor = require_actor(request)
    require_csrf(request)
    result = get_services(request).workflow.sign(
        page_id=pageid,
        revision_id=revid,
        target=resolve_target(group, user),
        actor=actor,
        remarks=remarks,
    )
    return {MODULE_NAME: result.to_api()}


@router.post("/hooks/content-changed", response_model=ContentChangedResponse)
def content_changed(
    request: Request,
    event: ContentChangedEvent,
    x_wikisign_hook_token: Optional[str] = Header(None),
):
    """
    Save-pipeline hook: invalidate a page's signatures after a content save.

    Failed saves (``ok=false``) are acknowledged and ignored.
    """
    require_hook_token(request, x_wikisign_hook_token)
    invalidated = get_services(request).trigger.on_save_attempted(
        event.page_id, event.revision_id, event.ok
    )
    return ContentChangedResponse(
        page_id=event.page_id,
        revision_id=event.revision_id,
        invalidated=invalidated,
    )


# ============================================================
# Queries
# ============================================================

@router.get("/pages/{page_id}/signature", response_model=PageSignatureStatus)
def signature_status(
    request: Request,
    page_id: int,
    group: Optional[str] = Query(None),
    user: Optional[str] = Query(None),
):
    """Signature state of the page's current revision for the calling user."""
    return get_services(request).workflow.status(
        page_id,
        resolve_target(group, user),
        current_actor(request),
    )


@router.get("/pages/{page_id}/signature/verify", response_model=VerificationReport)
def verify_signature(request: Request, page_id: int):
    """Recompute hashes and report drift between the signature and the page."""
    return get_services(request).workflow.verify(page_id)


@router.get("/pages/{page_id}/signatures", response_model=HistoryResponse)
def signature_history(request: Request, page_id: int):
    """Full signature history of a page, oldest first, invalidated ones included."""
    return HistoryResponse(
        page_id=page_id,
        signatures=get_services(request).store.list_history(page_id),
    )
