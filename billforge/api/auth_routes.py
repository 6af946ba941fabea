"""
Auth Routes - Registration, login, refresh and logout.

NO DICTIONARIES - All requests/responses use Pydantic models.

The refresh token travels in an HttpOnly cookie; the access token is returned
in the body and presented as a Bearer credential.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.api.dependencies import get_session_manager, get_stripe_provider
from billforge.config import settings
from billforge.db.session import get_write_db
from billforge.exceptions import StorageUnavailableError
from billforge.models.api import (
    AuthResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    UserResponse,
)
from billforge.models.domain import AuthSession
from billforge.services.auth import AuthService
from billforge.services.session_manager import SessionManager
from billforge.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def get_auth_service(
    db: AsyncSession = Depends(get_write_db),
    session_manager: SessionManager = Depends(get_session_manager),
    provider: StripeProvider | None = Depends(get_stripe_provider),
) -> AuthService:
    """Build the AuthService for a request."""
    return AuthService(db, session_manager, provider)


def set_refresh_cookie(response: Response, auth: AuthSession) -> None:
    """Attach the refresh token cookie, expiring with the token itself."""
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=auth.tokens.refresh_token,
        expires=auth.tokens.refresh_expires_at,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


def clear_refresh_cookie(response: Response) -> None:
    """Delete the refresh token cookie."""
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


def _presented_refresh_token(request: Request, body: RefreshRequest | None) -> str | None:
    """Cookie takes precedence over the request body."""
    cookie = request.cookies.get(settings.refresh_cookie_name)
    if cookie:
        return cookie
    return body.refresh_token if body else None


def _auth_response(auth: AuthSession) -> AuthResponse:
    return AuthResponse(
        user=UserResponse(
            id=auth.user_id,
            email=auth.email,
            name=auth.name,
            created_at=auth.created_at,
        ),
        access_token=auth.tokens.access_token,
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """
    Create an account and start a session.

    Raises 409 if the email is already registered.
    """
    auth = await service.register(body.name, body.email, body.password)
    set_refresh_cookie(response, auth)
    return _auth_response(auth)


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """
    Verify credentials and start a session.

    All of the user's earlier refresh tokens are revoked.
    """
    auth = await service.login(body.email, body.password)
    set_refresh_cookie(response, auth)
    return _auth_response(auth)


@router.post("/refresh", response_model=AuthResponse)
async def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """
    Rotate the refresh token.

    Reads the refresh cookie, falling back to the body's refresh_token.
    The presented token is consumed; a second use is rejected with 401.
    """
    auth = await service.refresh(_presented_refresh_token(request, body))
    set_refresh_cookie(response, auth)
    return _auth_response(auth)


@router.delete("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    request: Request,
    body: RefreshRequest | None = None,
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """
    End the session.

    Always answers 204 and clears the cookie, even for absent or revoked tokens.
    """
    try:
        await service.logout(_presented_refresh_token(request, body))
    except StorageUnavailableError as exc:
        logger.error("logout_revoke_failed", error=exc.message)

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    clear_refresh_cookie(response)
    return response
