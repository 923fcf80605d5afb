"""Route handlers for the Web API."""

from agencybrain.web.routes.health import router as health_router
from agencybrain.web.routes.staff import router as staff_router
from agencybrain.web.routes.staff import auth_router as staff_auth_router
from agencybrain.web.routes.training import router as training_router
from agencybrain.web.routes.challenge import router as challenge_router
from agencybrain.web.routes.calls import router as calls_router

__all__ = [
    "health_router",
    "staff_router",
    "staff_auth_router",
    "training_router",
    "challenge_router",
    "calls_router",
]
