"""
api/routes/v1/admin.py -- Admin dashboard.

Routes:
  GET /api/v1/admin  -- user counts per role (AdminPolicy: admins only)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import DashboardResponse
from auth.dependencies import authorize_request, try_get_current_user
from auth.models import AdminArea, User

router = APIRouter()


@router.get("/admin", response_model=DashboardResponse)
def dashboard(request: Request, current_user: User | None = Depends(try_get_current_user)) -> DashboardResponse:
    """Anonymous callers are denied by the policy like everyone else, and audited the same way."""
    authorize_request(request, current_user, AdminArea("dashboard"))
    store = request.app.state.user_store
    counts = store.count_by_role()
    return DashboardResponse(
        user_count=sum(counts.values()),
        users_by_role={role.label: n for role, n in counts.items()},
    )
