"""Authorization checks consumed from the identity service.

Handlers ask an ``Authorizer`` before touching event data. The core trusts the
answer and never re-derives tenant membership itself.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from jose import jwt
from jose.exceptions import JWTError

from .errors import AuthenticationError, ForbiddenError
from .models import EVENT_PUBLISHED, Event


@dataclass(frozen=True)
class Caller:
    subject: Optional[str] = None
    org_ids: frozenset[str] = field(default_factory=frozenset)
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def anonymous(self) -> bool:
        return self.subject is None


ANONYMOUS = Caller()


class Authorizer(Protocol):
    def can_view_event(self, caller: Caller, event: Event) -> bool: ...

    def can_manage_event(self, caller: Caller, event: Optional[Event]) -> bool: ...


class ClaimsAuthorizer:
    """Decides from the ``org_ids``/``roles`` claims of the identity token."""

    def can_view_event(self, caller: Caller, event: Event) -> bool:
        if event.status == EVENT_PUBLISHED:
            return True
        return self.can_manage_event(caller, event)

    def can_manage_event(self, caller: Caller, event: Optional[Event]) -> bool:
        if caller.anonymous:
            return False
        if "platform_admin" in caller.roles:
            return True
        return event is not None and event.org_id in caller.org_ids


def caller_from_token(token: Optional[str], secret: str) -> Caller:
    if not token:
        return ANONYMOUS
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        raise AuthenticationError("INVALID_TOKEN", "identity token rejected")
    if "sub" not in claims:
        raise AuthenticationError("INVALID_TOKEN", "identity token has no subject")
    return Caller(
        subject=str(claims["sub"]),
        org_ids=frozenset(claims.get("org_ids") or []),
        roles=frozenset(claims.get("roles") or []),
    )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("INVALID_TOKEN", "expected a bearer token")
    return token.strip()


def require_manage(authorizer: Authorizer, caller: Caller, event: Optional[Event]) -> None:
    if caller.anonymous:
        raise AuthenticationError(message="sign in required")
    if not authorizer.can_manage_event(caller, event):
        raise ForbiddenError(message="not permitted to manage this event")
