import jwt
from fastapi import Request

from supportdesk import settings
from supportdesk.errors import SupportDeskError


class AuthenticationError(SupportDeskError):
    pass


def authenticate_request(request: Request) -> str:
    """Bearer token → email of the caller."""
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing bearer token")
    try:
        claims = jwt.decode(token.strip(), settings.AUTH_JWT_SECRET, algorithms=settings.AUTH_JWT_ALGORITHMS)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("token expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"invalid token: {e}")
    email = (claims.get("email") or "").strip().lower()
    if not email:
        raise AuthenticationError("token carries no email")
    return email
