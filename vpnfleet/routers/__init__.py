"""
API routers for the fleet controller
"""

from .agent import router as agent_router
from .auth import router as auth_router
from .groups import router as groups_router
from .inbounds import router as inbounds_router
from .monitoring import router as monitoring_router
from .nodes import router as nodes_router
from .relay import router as relay_router
from .sni import router as sni_router
from .templates import router as templates_router

__all__ = [
    "agent_router",
    "auth_router",
    "groups_router",
    "inbounds_router",
    "monitoring_router",
    "nodes_router",
    "relay_router",
    "sni_router",
    "templates_router",
]
