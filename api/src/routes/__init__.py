from api.src.routes.health import router as health_router
from api.src.routes.auth import router as auth_router
from api.src.routes.projects import router as projects_router
from api.src.routes.groups import router as groups_router
from api.src.routes.modules import router as modules_router

__all__ = ["health_router", "auth_router", "projects_router", "groups_router", "modules_router"]
