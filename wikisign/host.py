"""
In-memory host wiki.

Implements the PageStore, RevisionStore and IdentityDirectory ports for
development, demos and tests. A real deployment wires the host wiki's own
adapters instead.

Saving a revision notifies registered save listeners, the same way the host
save pipeline calls InvalidationTrigger.on_content_changed.
"""

from threading import Lock
from typing import Callable, Optional

from .core.ports import WIKITEXT, Page, Revision

SaveListener = Callable[[int, int], object]


class InMemoryWiki:
    """Pages, revisions, users and groups held in process memory."""

    def __init__(self):
        self._pages: dict[int, Page] = {}
        self._latest: dict[int, int] = {}
        self._revisions: dict[int, Revision] = {}
        self._users: dict[int, str] = {}
        self._groups: dict[int, set[str]] = {}
        self._listeners: list[SaveListener] = []
        self._next_revision_id = 1
        self._lock = Lock()
        self.purges: dict[int, int] = {}

    # ------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------

    def add_user(self, user_id: int, name: str, groups: Optional[set[str]] = None) -> None:
        self._users[user_id] = name
        self._groups[user_id] = set(groups or ())

    def add_page(
        self,
        page_id: int,
        title: str,
        text: Optional[str] = "",
        content_model: str = WIKITEXT,
        revision_id: Optional[int] = None,
    ) -> int:
        """Create a page with its first revision. Returns the revision id."""
        with self._lock:
            self._pages[page_id] = Page(page_id=page_id, title=title)
        return self._store_revision(page_id, text, content_model, revision_id)

    def delete_page(self, page_id: int) -> None:
        with self._lock:
            self._pages.pop(page_id, None)

    def on_save(self, listener: SaveListener) -> None:
        """Register a callback invoked as ``listener(page_id, new_revision_id)``."""
        self._listeners.append(listener)

    def save_revision(
        self,
        page_id: int,
        text: Optional[str],
        content_model: str = WIKITEXT,
        revision_id: Optional[int] = None,
    ) -> int:
        """Save new content for an existing page and notify save listeners."""
        if page_id not in self._pages:
            raise KeyError(f"Page {page_id} does not exist")
        new_revision_id = self._store_revision(page_id, text, content_model, revision_id)
        for listener in self._listeners:
            listener(page_id, new_revision_id)
        return new_revision_id

    def _store_revision(
        self,
        page_id: int,
        text: Optional[str],
        content_model: str,
        revision_id: Optional[int],
    ) -> int:
        with self._lock:
            if revision_id is None:
                revision_id = self._next_revision_id
            if revision_id in self._revisions:
                raise ValueError(f"Revision {revision_id} already exists")
            self._next_revision_id = max(self._next_revision_id, revision_id + 1)
            self._revisions[revision_id] = Revision(
                revision_id=revision_id,
                page_id=page_id,
                content_model=content_model,
                text=text,
            )
            self._latest[page_id] = revision_id
            return revision_id

    # ------------------------------------------------------------
    # PageStore
    # ------------------------------------------------------------

    def resolve_page(self, page_id: int) -> Optional[Page]:
        return self._pages.get(page_id)

    def current_revision_id(self, page: Page) -> int:
        return self._latest.get(page.page_id, 0)

    def purge_render_cache(self, page: Page) -> None:
        with self._lock:
            self.purges[page.page_id] = self.purges.get(page.page_id, 0) + 1

    # ------------------------------------------------------------
    # RevisionStore
    # ------------------------------------------------------------

    def get_revision(self, revision_id: int) -> Optional[Revision]:
        return self._revisions.get(revision_id)

    def get_text_content(self, revision_id: int) -> Optional[str]:
        revision = self._revisions.get(revision_id)
        if revision is None or not revision.is_text:
            return None
        return revision.text

    # ------------------------------------------------------------
    # IdentityDirectory
    # ------------------------------------------------------------

    def groups_of(self, actor_id: int) -> set[str]:
        return set(self._groups.get(actor_id, ()))

    def name_of(self, actor_id: int) -> Optional[str]:
        return self._users.get(actor_id)
