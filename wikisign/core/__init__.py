# Core signing services
from .errors import (
    SigningError,
    NotLoggedIn,
    PageNotFound,
    StaleRevision,
    NotAuthorized,
    HashUnavailable,
    PersistenceError,
)
from .hasher import ContentHasher, HashError, RevisionNotFound, UnsupportedContent
from .authorization import (
    Actor,
    AuthorizationResolver,
    DefaultRoleTarget,
    GroupTarget,
    SigningTarget,
    UserTarget,
    parse_target_args,
    resolve_target,
)
from .ports import (
    WIKITEXT,
    IdentityDirectory,
    Page,
    PageStore,
    Revision,
    RevisionStore,
)
from .workflow import SigningWorkflow
from .invalidation import InvalidationTrigger

__all__ = [
    "SigningError",
    "NotLoggedIn",
    "PageNotFound",
    "StaleRevision",
    "NotAuthorized",
    "HashUnavailable",
    "PersistenceError",
    "ContentHasher",
    "HashError",
    "RevisionNotFound",
    "UnsupportedContent",
    "Actor",
    "AuthorizationResolver",
    "DefaultRoleTarget",
    "GroupTarget",
    "SigningTarget",
    "UserTarget",
    "parse_target_args",
    "resolve_target",
    "WIKITEXT",
    "IdentityDirectory",
    "Page",
    "PageStore",
    "Revision",
    "RevisionStore",
    "SigningWorkflow",
    "InvalidationTrigger",
]
