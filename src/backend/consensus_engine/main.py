"""
Consensus Engine — FastAPI Backend
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from consensus_engine.api import health, preferences, sessions, ws
from consensus_engine.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def _mask(val: str) -> str:
    if not val:
        return "(empty)"
    if len(val) <= 8:
        return "***"
    return val[:4] + "..." + val[-4:]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log configuration (secrets masked) on startup."""
    logger.info("=== Consensus Engine Backend Starting ===")
    logger.info(f"  llm_base_url      : {settings.llm_base_url or '(empty)'}")
    logger.info(f"  llm_api_key       : {_mask(settings.llm_api_key)}")
    logger.info(f"  fast_model_id     : {settings.fast_model_id}")
    logger.info(f"  pro_model_id      : {settings.pro_model_id}")
    logger.info(f"  media_api_key     : {_mask(settings.media_api_key)}")
    logger.info(f"  video_api_key     : {_mask(settings.video_api_key)}")
    logger.info(f"  degraded_mode     : {settings.degraded_mode}")
    logger.info(f"  privacy_mode      : {settings.privacy_mode}")
    logger.info(f"  sessions_file     : {settings.sessions_file}")
    logger.info(f"  cors_origins      : {settings.cors_origins}")

    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is empty -- language-model calls will fail!")
    if not settings.video_api_key:
        logger.warning("VIDEO_API_KEY is empty -- video experts will ask for a key")
    yield


app = FastAPI(
    title="Consensus Engine",
    description="Multi-expert consensus chat: framing, routing, parallel experts, judge and critic",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["health"])
app.include_router(preferences.router, prefix="/api/preferences", tags=["preferences"])
app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
app.include_router(ws.router, prefix="/ws", tags=["websocket"])
