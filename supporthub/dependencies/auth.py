from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from supporthub.core.security import IdentityResolver, InvalidCredentialsError, User

bearer_scheme = HTTPBearer(auto_error=False)


async def get_identity_resolver(request: Request) -> IdentityResolver:
    resolver = getattr(request.app.state, "identity_resolver", None)
    if resolver is None:
        raise HTTPException(status_code=503, detail="Identity resolution is not configured")
    return resolver


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
) -> User | None:
    """Resolve the bearer token to a user.

    Anonymous requests yield ``None``; the ticket service rejects them so the
    error shape stays the same as for any other authorization failure.
    """

    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    try:
        user = resolver.resolve(token)
    except InvalidCredentialsError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials") from exc
    request.state.user = user
    return user


CurrentUser = Annotated[User | None, Depends(get_current_user)]
