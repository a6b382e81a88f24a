# FastAPI Routers
from tinypivot_api.routers.datasources import router as datasources_router
from tinypivot_api.routers.health import router as health_router

__all__ = [
    "datasources_router",
    "health_router",
]
