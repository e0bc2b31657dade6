"""
Signing Authorization

Decides whether an actor may sign a page.

A page names who may sign it with a signing target, which is exactly one of:
- GroupTarget(name):  any member of the group
- UserTarget(name):   one specific user, matched by exact (case-sensitive) name
- DefaultRoleTarget:  members of the configured privileged role ("sysop")

The target is resolved once, where the request enters the system
(``resolve_target`` / ``parse_target_args``). Business logic only ever sees
the resolved variant.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from .ports import IdentityDirectory
from ..config import DEFAULT_ROLE


@dataclass(frozen=True)
class Actor:
    """An authenticated user and their current group memberships."""
    actor_id: int
    name: str
    groups: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_directory(cls, actor_id: int, directory: IdentityDirectory) -> Optional["Actor"]:
        """Look the actor up in the identity directory. None if unknown."""
        name = directory.name_of(actor_id)
        if name is None:
            return None
        return cls(
            actor_id=actor_id,
            name=name,
            groups=frozenset(directory.groups_of(actor_id)),
        )


@dataclass(frozen=True)
class GroupTarget:
    name: str
    kind = "group"


@dataclass(frozen=True)
class UserTarget:
    name: str
    kind = "user"


@dataclass(frozen=True)
class DefaultRoleTarget:
    kind = "default"


SigningTarget = Union[GroupTarget, UserTarget, DefaultRoleTarget]


def resolve_target(group: Optional[str] = None, user: Optional[str] = None) -> SigningTarget:
    """
    Build the signing target from request parameters.

    ``group`` wins over ``user``; with neither, the default role applies.
    """
    if group is not None:
        return GroupTarget(group)
    if user is not None:
        return UserTarget(user)
    return DefaultRoleTarget()


def parse_target_args(args: Iterable[str]) -> SigningTarget:
    """
    Parse the arguments a page embeds to declare its signing target.

    Accepts ``key=value`` pairs and bare values. A bare value is taken as
    the group name (only the first one counts). Unknown keys are ignored.

        parse_target_args(["group=legal"])       -> GroupTarget("legal")
        parse_target_args(["user=Alice"])        -> UserTarget("Alice")
        parse_target_args(["legal"])             -> GroupTarget("legal")
        parse_target_args([])                    -> DefaultRoleTarget()
    """
    params: dict[str, str] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if sep:
            params[key.strip()] = value.strip()
        elif "group" not in params:
            params["group"] = arg.strip()
    return resolve_target(params.get("group"), params.get("user"))


class AuthorizationResolver:
    """Pure decision function over (actor, target)."""

    def __init__(self, default_role: str = DEFAULT_ROLE):
        self.default_role = default_role

    def authorize(self, actor: Actor, target: SigningTarget) -> bool:
        if isinstance(target, GroupTarget):
            return target.name in actor.groups
        if isinstance(target, UserTarget):
            return actor.name == target.name
        if isinstance(target, DefaultRoleTarget):
            return self.default_role in actor.groups
        raise TypeError(f"Unknown signing target: {target!r}")

    def describe(self, target: SigningTarget) -> tuple[str, str]:
        """
        Return ``(kind, value)`` for a target, with the default role made explicit.

        This is what a page's signature block needs to say whose signature
        it is waiting for.
        """
        if isinstance(target, DefaultRoleTarget):
            return "group", self.default_role
        return target.kind, target.name
