from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from helpdesk.workitems.models import Actor, Role

# Stand-in for the external identity provider: bearer token -> (user id, role, email).
TOKEN_ACTOR_MAP: dict[str, tuple[str, Role, str]] = {
    "admin-token": ("admin", Role.ADMIN, "admin@example.com"),
    "staff-token": ("staff", Role.STAFF, "staff@example.com"),
}

_ROLE_SATISFIES: dict[Role, frozenset[Role]] = {
    Role.STAFF: frozenset({Role.STAFF, Role.ADMIN}),
    Role.ADMIN: frozenset({Role.ADMIN}),
}

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_actor_from_token(token: str | None) -> Actor:
    """Return the actor for a bearer token; no token means an anonymous caller."""

    if token is None:
        return Actor.anonymous()

    if token not in TOKEN_ACTOR_MAP:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    user_id, role, email = TOKEN_ACTOR_MAP[token]
    return Actor(id=user_id, role=role, email=email)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> Actor:
    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    token = credentials.credentials if credentials is not None else None
    actor = resolve_actor_from_token(token)
    request.state.actor = actor
    return actor


def role_required(role: Role) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the caller holds ``role`` (admins satisfy staff)."""

    allowed = _ROLE_SATISFIES[role]

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
