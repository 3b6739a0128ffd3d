"""Control Adoption Engine - API Routers"""
from .adoption import router as adoption_router
from .interventions import router as interventions_router
from .controls import router as controls_router
from .evidence import router as evidence_router

__all__ = [
    "adoption_router",
    "interventions_router",
    "controls_router",
    "evidence_router",
]
