"""Health check endpoints."""
import logging

from fastapi import APIRouter

from consensus_engine.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/api/health/config")
async def config_check():
    """Diagnostic endpoint: shows whether critical env vars are configured (no secrets)."""
    return {
        "llm_base_url_set": bool(settings.llm_base_url),
        "llm_api_key_set": bool(settings.llm_api_key),
        "media_api_key_set": bool(settings.media_api_key),
        "video_api_key_set": bool(settings.video_api_key),
        "fast_model_id": settings.fast_model_id,
        "pro_model_id": settings.pro_model_id,
        "degraded_mode": settings.degraded_mode,
        "privacy_mode": settings.privacy_mode,
    }


@router.get("/api/health/model")
async def model_readiness():
    """Check if the language-model endpoint is accepting requests."""
    from consensus_engine.services.llm import LLMService

    service = LLMService()
    ready = await service.check_readiness()
    return {
        "ready": ready,
        "model_id": settings.fast_model_id,
        "base_url_set": bool(settings.llm_base_url),
    }
