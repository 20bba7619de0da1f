import logging
from fastapi import APIRouter, Depends

from cropdoc import __version__
from cropdoc.dependencies import SessionRegistry, get_registry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "online",
        "service": "CropDoc Diagnostic Sessions",
        "version": __version__,
        "features": [
            "Structured Crop Image Analysis",
            "Grounded Treatment Deep Dives",
            "Context-Aware Agronomist Chat",
            "Persisted Diagnosis History"
        ]
    }


@router.get("/health")
async def health_check(registry: SessionRegistry = Depends(get_registry)):
    return {
        "status": "healthy",
        "version": __version__,
        "active_sessions": len(registry.sessions),
        "services": {
            "model_provider": registry.provider_configured,
            "history_backend": registry.backend.name
        }
    }
