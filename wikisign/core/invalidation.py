"""
Content-change invalidation.

The host calls this after every page save. A new revision means any
signature on the page no longer describes its content, so every valid
signature of the page is invalidated (never deleted).
"""

from typing import Optional, TYPE_CHECKING

from .ports import PageStore
from ..observability import ContextLogger, MetricsCollector, get_logger

if TYPE_CHECKING:
    from ..db.store import SignatureStore


class InvalidationTrigger:
    """Save-event handler that invalidates a page's signatures."""

    def __init__(
        self,
        store: "SignatureStore",
        pages: PageStore,
        logger: Optional[ContextLogger] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._pages = pages
        self._logger = logger or get_logger(__name__)
        self._metrics = metrics

    def on_content_changed(self, page_id: int, new_revision_id: int) -> int:
        """
        Invalidate all valid signatures of a page after a content save.

        Page existence is not checked here; store errors propagate.

        Returns:
            Number of signatures invalidated (0 when the page was unsigned)
        """
        self._logger.info(
            "Invalidating signatures after content change",
            page_id=page_id,
            new_revision_id=new_revision_id,
        )
        affected = self._store.invalidate_all_valid(page_id)

        if affected > 0:
            self._logger.info(
                "Signatures invalidated",
                page_id=page_id,
                affected_rows=affected,
            )
        else:
            self._logger.info(
                "No signatures to invalidate",
                page_id=page_id,
                affected_rows=affected,
            )

        if self._metrics is not None:
            self._metrics.record_invalidation(affected)

        page = self._pages.resolve_page(page_id)
        if page is not None:
            try:
                self._pages.purge_render_cache(page)
            except Exception:
                self._logger.exception("Render cache purge failed", page_id=page_id)
            else:
                self._logger.info("Page purged from render cache", page_id=page_id)

        return affected

    def on_save_attempted(self, page_id: int, new_revision_id: int, ok: bool) -> Optional[int]:
        """
        Entry point for hosts that report every save attempt, failed ones included.

        A failed save left the content unchanged, so nothing is invalidated.
        """
        if not ok:
            self._logger.warning(
                "Page save failed, signatures left untouched",
                page_id=page_id,
            )
            return None
        return self.on_content_changed(page_id, new_revision_id)
