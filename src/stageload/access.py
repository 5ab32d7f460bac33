"""
Access control collaborator.

The pipeline asks an Authorizer before loading into, transforming into,
or reading from a table. Grants are static records from configuration;
there is no role hierarchy.
"""

from collections.abc import Iterable
from fnmatch import fnmatchcase
from typing import Protocol

from stageload.config.settings import Grant
from stageload.errors import PermissionDeniedError
from stageload.utils.logging import get_logger

log = get_logger(__name__)


class Authorizer(Protocol):
    """Decides whether a principal may perform an action on a resource."""

    def check(self, principal: str, action: str, resource: str) -> None:
        """Raise PermissionDeniedError if the action is not allowed."""
        ...


class AllowAllAuthorizer:
    """Authorizer that permits everything."""

    def check(self, principal: str, action: str, resource: str) -> None:
        return None


class GrantAuthorizer:
    """
    Evaluates static grants.

    A grant matches when its principal equals the caller (or is ``*``),
    its action equals the requested action (or is ``*``), and its
    resource glob matches the table name.
    """

    def __init__(self, grants: Iterable[Grant]) -> None:
        self.grants = tuple(grants)

    def allows(self, principal: str, action: str, resource: str) -> bool:
        """True if any grant covers the request."""
        return any(
            grant.principal in (principal, "*")
            and grant.action in (action, "*")
            and fnmatchcase(resource, grant.resource)
            for grant in self.grants
        )

    def check(self, principal: str, action: str, resource: str) -> None:
        """
        Check a request against the grants.

        Raises:
            PermissionDeniedError: If no grant covers the request.
        """
        if not self.allows(principal, action, resource):
            log.warning("Permission denied", principal=principal, action=action, resource=resource)
            msg = f"Principal '{principal}' may not {action} '{resource}'"
            raise PermissionDeniedError(msg)


def authorizer_for(grants: Iterable[Grant] | None) -> Authorizer:
    """Build the authorizer for configured grants (None allows everything)."""
    if grants is None:
        return AllowAllAuthorizer()
    return GrantAuthorizer(grants)
