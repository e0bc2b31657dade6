"""
Content Hashing Service

Collapses a revision's raw text into a fixed-length digest.
Same text → same hash. Always.

This is what a signature binds to. If this changes, every stored
signature becomes unverifiable.

HASHING RULES:
1. Input: the exact text of the revision's main content slot
2. Encoding: UTF-8 bytes of that text
3. Whitespace: preserved, no normalization of any kind
4. Metadata (author, timestamp, revision id): never part of the input
5. Algorithm: SHA-1 (160-bit), lowercase hex, 40 characters
6. Non-text content models: refused, not hashed
"""

import hashlib
import hmac
from typing import Optional

from .ports import RevisionStore
from ..observability import ContextLogger, get_logger


class HashError(Exception):
    """Base exception for content hashing failures."""
    pass


class RevisionNotFound(HashError):
    """Raised when the revision or its text cannot be resolved."""
    pass


class UnsupportedContent(HashError):
    """Raised when the revision's content is not plain text."""
    pass


class ContentHasher:
    """
    Deterministic, content-only hashing of revisions.

    Two revisions with byte-identical text hash identically, whatever
    page or author they belong to.
    """

    ALGORITHM = "sha1"
    DIGEST_LENGTH = 40

    def __init__(self, revisions: RevisionStore, logger: Optional[ContextLogger] = None):
        self._revisions = revisions
        self._logger = logger or get_logger(__name__)

    @classmethod
    def digest_text(cls, text: str) -> str:
        """
        Hash raw text.

        Args:
            text: Revision text, exactly as stored

        Returns:
            Hex-encoded SHA-1 digest (40 characters, lowercase)
        """
        return hashlib.new(cls.ALGORITHM, text.encode("utf-8")).hexdigest()

    def text_for(self, revision_id: int) -> str:
        """
        Retrieve the raw text of a revision.

        Raises:
            RevisionNotFound: Revision missing or has no text
            UnsupportedContent: Revision content is not wikitext
        """
        revision = self._revisions.get_revision(revision_id)
        if revision is None:
            self._logger.warning(
                "Revision not found when resolving content",
                revision_id=revision_id,
            )
            raise RevisionNotFound(f"Revision {revision_id} not found")

        if not revision.is_text:
            self._logger.warning(
                "Revision content is not wikitext, cannot hash",
                revision_id=revision_id,
                content_model=revision.content_model,
            )
            raise UnsupportedContent(
                f"Revision {revision_id} has content model "
                f"'{revision.content_model}', only plain text can be signed"
            )

        text = self._revisions.get_text_content(revision_id)
        if text is None:
            self._logger.warning("Revision has no text content", revision_id=revision_id)
            raise RevisionNotFound(f"Revision {revision_id} has no text content")

        self._logger.debug(
            "Retrieved revision text",
            revision_id=revision_id,
            length=len(text),
        )
        return text

    def hash(self, revision_id: int) -> str:
        """
        Compute the content hash of a revision.

        Args:
            revision_id: The revision to hash

        Returns:
            Hex-encoded SHA-1 digest of the revision text

        Raises:
            RevisionNotFound: Revision missing or has no text
            UnsupportedContent: Revision content is not wikitext
        """
        digest = self.digest_text(self.text_for(revision_id))
        self._logger.debug("Generated content hash", revision_id=revision_id, hash=digest)
        return digest

    def matches(self, revision_id: int, expected_hash: str) -> bool:
        """
        Check a stored hash against the revision's current text.

        Returns False (rather than raising) when the revision can no
        longer be hashed: a signature over unresolvable content does not
        match anything.
        """
        try:
            computed = self.hash(revision_id)
        except HashError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
