from app.api.auth import router as auth_router, get_current_user
from app.api.ai import router as ai_router
from app.api.executions import router as executions_router
from app.api.apps import router as apps_router
from app.api.billing import router as billing_router

__all__ = [
    "auth_router",
    "ai_router",
    "executions_router",
    "apps_router",
    "billing_router",
    "get_current_user",
]
