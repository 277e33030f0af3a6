from fastapi import APIRouter, Response

from .models import TokenResponse
from ..auth.security import TOKEN_COOKIE, create_anon_token
from ..config import settings

router = APIRouter(prefix="/api", tags=["auth"])


@router.post("/token", response_model=TokenResponse)
def issue_token(response: Response) -> TokenResponse:
    """Issue an anonymous access token, also set as the `anon_jwt` cookie."""
    token = create_anon_token()
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=settings.jwt_ttl,
        httponly=True,
        samesite="lax",
    )
    return TokenResponse(token=token, expires_in=settings.jwt_ttl)
