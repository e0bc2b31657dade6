"""
Signing errors.

Every failure the signing workflow can report carries a machine-readable
``code``. The request layer surfaces that code verbatim so clients can tell
"nothing to hash" apart from "storage broke".
"""


class SigningError(Exception):
    """Base exception for signing failures."""
    code = "error"
    http_status = 400


class NotLoggedIn(SigningError):
    """Raised when an anonymous request tries to sign."""
    code = "notloggedin"
    http_status = 401


class PageNotFound(SigningError):
    """Raised when the page does not exist (or was deleted)."""
    code = "nosuchpage"
    http_status = 404


class StaleRevision(SigningError):
    """Raised when the revision being signed is no longer the page's latest."""
    code = "contentchanged"
    http_status = 409

    def __init__(self, page_id: int, revision_id: int, current_revision_id: int):
        super().__init__(
            "The page content has changed since the signature request was "
            "initiated. Please refresh the page and try again."
        )
        self.page_id = page_id
        self.revision_id = revision_id
        self.current_revision_id = current_revision_id


class NotAuthorized(SigningError):
    """
    Raised when the actor does not satisfy the signing target.

    The message is deliberately generic: it never names the groups or users
    that would have been accepted.
    """
    code = "permissiondenied"
    http_status = 403

    def __init__(self, message: str = "You are not authorized to sign pages with the specified criteria."):
        super().__init__(message)


class HashUnavailable(SigningError):
    """Raised when the revision is missing or has no textual content to hash."""
    code = "nohash"
    http_status = 422


class PersistenceError(SigningError):
    """Raised when the signature could not be stored."""
    code = "dberror"
    http_status = 503
