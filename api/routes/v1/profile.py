"""
api/routes/v1/profile.py -- The signed-in user's own profile.

Routes:
  GET   /api/v1/profile                -- show own profile (requires auth)
  PATCH /api/v1/profile                -- update_type = profile | password | email
  GET   /api/v1/confirm_email/{token}  -- redeem an email confirmation link (public)

The confirmation endpoint is public: the link is opened from a
mail client, often in a browser without the session cookie. Possession of the
token is the authorization.
"""

from __future__ import annotations

from typing import Union

from fastapi import APIRouter, Depends, Request

from api.models import EmailChangeResponse, EmailUpdate, PasswordUpdate, ProfilePatch, UserResponse
from auth.dependencies import get_current_user, request_context
from auth.models import User

router = APIRouter()


@router.get("/profile", response_model=UserResponse)
def show_profile(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.patch("/profile", response_model=Union[UserResponse, EmailChangeResponse])
def update_profile(
    request: Request,
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
) -> Union[UserResponse, EmailChangeResponse]:
    """Apply one kind of profile update.

    email: starts the confirmation workflow. The address is NOT changed until
    the emailed link is redeemed; the response says where the link was sent.
    """
    context = request_context(request)
    state = request.app.state

    if isinstance(body, EmailUpdate):
        pending = state.email_change.request_change(current_user, body.new_email, context)
        return EmailChangeResponse(
            message=(
                f"Confirmation email sent to {pending.new_email}. "
                "Please check your email and click the confirmation link."
            ),
            new_email=pending.new_email,
            expires_at=pending.expires_at,
        )
    if isinstance(body, PasswordUpdate):
        user = state.accounts.change_password(
            current_user,
            body.current_password,
            body.new_password,
            body.new_password_confirmation,
            context,
        )
        return UserResponse.from_user(user)
    user = state.accounts.update_profile(current_user, body.username, context)
    return UserResponse.from_user(user)


@router.get("/confirm_email/{token}", response_model=UserResponse)
def confirm_email(request: Request, token: str) -> UserResponse:
    """Swap in the pending email address. 404 for unknown/used tokens, 410 when expired."""
    user = request.app.state.email_change.confirm(token, request_context(request))
    return UserResponse.from_user(user)
