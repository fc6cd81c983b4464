from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.requests import HTTPConnection

from app.identity import Identity, IdentityContext, PrivilegePolicy, SessionTokenCodec

bearer_scheme = HTTPBearer(auto_error=False)


def build_identity_context(connection: HTTPConnection, token: str | None) -> IdentityContext:
    """Create the identity context for a request or websocket from its session token."""

    codec: SessionTokenCodec | None = getattr(connection.app.state, "token_codec", None)
    policy: PrivilegePolicy | None = getattr(connection.app.state, "privilege_policy", None)
    if codec is None or policy is None:
        raise HTTPException(status_code=503, detail="Identity service is not configured")
    return IdentityContext(token, codec=codec, policy=policy)


async def get_identity_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> IdentityContext:
    cached = getattr(request.state, "identity_context", None)
    if isinstance(cached, IdentityContext):
        return cached

    token = credentials.credentials if credentials is not None else None
    context = build_identity_context(request, token)
    request.state.identity_context = context
    return context


async def get_optional_identity(
    context: Annotated[IdentityContext, Depends(get_identity_context)],
) -> Identity | None:
    return context.current_identity()


async def get_current_identity(
    identity: Annotated[Identity | None, Depends(get_optional_identity)],
) -> Identity:
    """Require a valid session; privilege is decided later by the services."""

    if identity is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing session token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
OptionalIdentity = Annotated[Identity | None, Depends(get_optional_identity)]
