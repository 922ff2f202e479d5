from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from dealflow.context import set_actor_user_id
from dealflow.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


def _bind(request: Request, user: AuthUser) -> AuthUser:
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    set_actor_user_id(user.sub)
    return user


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer ") :] if auth_header.startswith("Bearer ") else ""
    if not token:
        return _bind(request, ANONYMOUS)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _bind(request, ANONYMOUS)

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return _bind(request, AuthUser(sub=str(payload.get("sub", "anonymous")), roles=[str(role) for role in roles]))
