"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health and auth routers are
open; the auth routes that need a principal (device approve/deny,
/auth/me) declare it themselves.
"""

from fastapi import APIRouter, Depends

from reps.api.auth import router as auth_router
from reps.api.health import router as health_router
from reps.api.users import router as users_router
from reps.auth.dependencies import get_current_user

# All protected routers require authentication
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])

# Protected routes — require a valid session (or the legacy key)
api_router.include_router(users_router, tags=["users"], dependencies=_auth)
