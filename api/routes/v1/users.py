"""
api/routes/v1/users.py -- User records, gated by the policy engine.

Routes:
  GET    /api/v1/users             -- list, filtered by scope (admin: all, others: self)
  GET    /api/v1/users/{id}        -- show   (self or admin)
  GET    /api/v1/users/{id}/edit   -- edit   (self or admin) + permitted attributes
  PATCH  /api/v1/users/{id}        -- update (self or admin; attributes per policy)
  DELETE /api/v1/users/{id}        -- destroy (admin, never self)

The policy action is derived from the request by authorize_request(), e.g.
GET .../edit -> edit. Unknown ids return 404 before any policy check, matching
how the record lookup precedes authorization in every handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import UserEditResponse, UserPatch, UserResponse
from auth.dependencies import authorize_request, get_current_user, request_context
from auth.models import User

router = APIRouter()


def _load_user(request: Request, user_id: int) -> User:
    user = request.app.state.user_store.find(user_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return user


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, current_user: User = Depends(get_current_user)) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in request.app.state.accounts.list_users(current_user)]


@router.get("/users/{user_id}", response_model=UserResponse)
def show_user(request: Request, user_id: int, current_user: User = Depends(get_current_user)) -> UserResponse:
    user = authorize_request(request, current_user, _load_user(request, user_id))
    return UserResponse.from_user(user)


@router.get("/users/{user_id}/edit", response_model=UserEditResponse)
def edit_user(request: Request, user_id: int, current_user: User = Depends(get_current_user)) -> UserEditResponse:
    user = authorize_request(request, current_user, _load_user(request, user_id))
    permitted = request.app.state.policy.policy(current_user, user).permitted_attributes()
    return UserEditResponse(user=UserResponse.from_user(user), permitted_attributes=sorted(permitted))


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Update a user. Role changes take effect at the target's next login."""
    target = _load_user(request, user_id)
    changes = body.model_dump(exclude_unset=True)
    if "role" in changes and changes["role"] is not None:
        changes["role"] = body.role.value
    updated = request.app.state.accounts.admin_update(current_user, target, changes, request_context(request))
    return UserResponse.from_user(updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: int, current_user: User = Depends(get_current_user)) -> Response:
    target = _load_user(request, user_id)
    request.app.state.accounts.delete_user(current_user, target, request_context(request))
    return Response(status_code=204)
