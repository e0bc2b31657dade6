"""
Signing Workflow

Orchestrates a sign request against the host wiki and the signature store.

Rules (enforced in order):
- The page must exist
- Only the page's current revision can be signed
- The actor must satisfy the page's signing target
- The revision's text must hash (plain text only)
- Prior signatures are invalidated and the new one inserted atomically

The staleness check runs before authorization: a request against an
outdated view is rejected as stale whoever sends it. It is repeated inside
the store's page write lock, which content-change invalidation also takes.
"""

import time
from typing import Optional, TYPE_CHECKING

from .authorization import Actor, AuthorizationResolver, SigningTarget
from .errors import (
    HashUnavailable,
    NotAuthorized,
    PageNotFound,
    PersistenceError,
    SigningError,
    StaleRevision,
)
from .hasher import ContentHasher, HashError
from .ports import Page, PageStore
from ..observability import ContextLogger, MetricsCollector, get_logger
from ..schemas import PageSignatureStatus, SignResult, VerificationReport

if TYPE_CHECKING:
    from ..db.store import SignatureStore


class SigningWorkflow:
    """
    The signing service.

    Stateless apart from its collaborators; one instance serves every
    request thread.
    """

    def __init__(
        self,
        pages: PageStore,
        hasher: ContentHasher,
        resolver: AuthorizationResolver,
        store: "SignatureStore",
        logger: Optional[ContextLogger] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._pages = pages
        self._hasher = hasher
        self._resolver = resolver
        self._store = store
        self._logger = logger or get_logger(__name__)
        self._metrics = metrics

    def _require_page(self, page_id: int) -> tuple[Page, int]:
        page = self._pages.resolve_page(page_id)
        if page is None:
            raise PageNotFound(f"Page {page_id} does not exist or has been deleted.")
        return page, self._pages.current_revision_id(page)

    def sign(
        self,
        page_id: int,
        revision_id: int,
        target: SigningTarget,
        actor: Actor,
        remarks: Optional[str] = None,
    ) -> SignResult:
        """
        Sign the current revision of a page.

        Raises:
            PageNotFound: Page does not exist
            StaleRevision: revision_id is not the page's latest revision
            NotAuthorized: Actor does not satisfy the target
            HashUnavailable: Revision missing or not plain text
            PersistenceError: The store could not record the signature
        """
        start = time.perf_counter()
        try:
            result = self._sign(page_id, revision_id, target, actor, remarks)
        except SigningError as e:
            self._record(start, e.code)
            self._logger.warning(
                "Sign request rejected",
                page_id=page_id,
                revision_id=revision_id,
                actor_id=actor.actor_id,
                code=e.code,
            )
            raise
        self._record(start, None)
        return result

    def _record(self, start: float, failure_code: Optional[str]) -> None:
        if self._metrics is not None:
            self._metrics.record_sign((time.perf_counter() - start) * 1000, failure_code)

    def _sign(
        self,
        page_id: int,
        revision_id: int,
        target: SigningTarget,
        actor: Actor,
        remarks: Optional[str],
    ) -> SignResult:
        page, latest_revision_id = self._require_page(page_id)

        if revision_id != latest_revision_id:
            raise StaleRevision(page_id, revision_id, latest_revision_id)

        if not self._resolver.authorize(actor, target):
            raise NotAuthorized()

        try:
            content_hash = self._hasher.hash(revision_id)
        except HashError as e:
            raise HashUnavailable(
                "Could not retrieve content hash for the specified revision."
            ) from e

        # Re-checked under the page lock: a save landing after the check
        # above either makes this stale or invalidates what we insert.
        def still_current() -> None:
            latest = self._pages.current_revision_id(page)
            if latest != revision_id:
                raise StaleRevision(page_id, revision_id, latest)

        # Store failures already raise PersistenceError subclasses
        stored = self._store.add_signature(
            page_id,
            revision_id,
            actor.actor_id,
            content_hash,
            remarks,
            precondition=still_current,
        )
        if not stored:
            raise PersistenceError("Failed to store digital signature.")

        self._purge(page)

        return SignResult(
            page_id=page_id,
            revision_id=revision_id,
            signer_id=actor.actor_id,
            content_hash=content_hash,
            remarks=remarks,
        )

    def _purge(self, page: Page) -> None:
        # Fire-and-forget: the signature is already committed.
        try:
            self._pages.purge_render_cache(page)
        except Exception:
            self._logger.exception("Render cache purge failed", page_id=page.page_id)
            return
        self._logger.info("Page purged from render cache", page_id=page.page_id)

    def status(
        self,
        page_id: int,
        target: SigningTarget,
        actor: Optional[Actor] = None,
    ) -> PageSignatureStatus:
        """
        Signature state of the page's current revision, as seen by ``actor``.

        ``can_sign`` is only ever True for an authenticated, authorized actor
        on a page whose current revision is not yet signed.
        """
        _, current_revision_id = self._require_page(page_id)
        signature = self._store.get_valid_signature(page_id, current_revision_id)
        target_type, target_value = self._resolver.describe(target)

        can_sign = (
            signature is None
            and actor is not None
            and self._resolver.authorize(actor, target)
        )

        return PageSignatureStatus(
            page_id=page_id,
            current_revision_id=current_revision_id,
            target_type=target_type,
            target_value=target_value,
            state="signed" if signature is not None else "awaiting",
            signature=signature,
            can_sign=can_sign,
        )

    def verify(self, page_id: int) -> VerificationReport:
        """
        Check the page's valid signature against the content it now holds.

        Recomputes the hash of the signed revision (has the stored text
        changed underneath the signature?) and of the current revision
        (does the signed hash still describe the page?).
        """
        _, current_revision_id = self._require_page(page_id)
        signature = self._store.get_current_signature(page_id)

        if signature is None:
            return VerificationReport(page_id=page_id, current_revision_id=current_revision_id)

        signed_ok = self._hasher.matches(signature.revision_id, signature.content_hash)
        current_ok = self._hasher.matches(current_revision_id, signature.content_hash)
        drifted = not (signed_ok and current_ok)

        if drifted:
            self._logger.warning(
                "Signature drift detected",
                page_id=page_id,
                signed_revision_id=signature.revision_id,
                current_revision_id=current_revision_id,
                hash_matches_signed_revision=signed_ok,
                current_content_matches=current_ok,
            )

        return VerificationReport(
            page_id=page_id,
            current_revision_id=current_revision_id,
            signature=signature,
            hash_matches_signed_revision=signed_ok,
            current_content_matches=current_ok,
            drifted=drifted,
        )
