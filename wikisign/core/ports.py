"""
Host collaborator interfaces.

The signing core never talks to the wiki directly. It consumes three narrow
ports which the host (or the in-memory wiki in ``wikisign.host``) implements.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

# Content model identifier for plain wikitext. Anything else is not hashable.
WIKITEXT = "wikitext"


@dataclass(frozen=True)
class Page:
    """A page handle as resolved by the host."""
    page_id: int
    title: str


@dataclass(frozen=True)
class Revision:
    """An immutable revision snapshot."""
    revision_id: int
    page_id: int
    content_model: str
    text: Optional[str]

    @property
    def is_text(self) -> bool:
        return self.content_model == WIKITEXT


@runtime_checkable
class PageStore(Protocol):
    def resolve_page(self, page_id: int) -> Optional[Page]:
        """Return the page, or None if it does not exist."""
        ...

    def current_revision_id(self, page: Page) -> int:
        """Return the page's latest revision id (0 if it has none)."""
        ...

    def purge_render_cache(self, page: Page) -> None:
        """Drop any cached rendering of the page."""
        ...


@runtime_checkable
class RevisionStore(Protocol):
    def get_revision(self, revision_id: int) -> Optional[Revision]:
        ...

    def get_text_content(self, revision_id: int) -> Optional[str]:
        """Return the revision's text, or None if missing or non-textual."""
        ...


@runtime_checkable
class IdentityDirectory(Protocol):
    def groups_of(self, actor_id: int) -> set[str]:
        ...

    def name_of(self, actor_id: int) -> Optional[str]:
        ...
