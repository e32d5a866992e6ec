import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)
from app.domains.media.router import router as uploads_router
from app.domains.media.records_router import audio_router, photo_router

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# Domain routers
app.include_router(
    uploads_router,
    prefix=f"{settings.API_V1_PREFIX}/uploads",
    tags=["uploads"],
)
app.include_router(
    audio_router,
    prefix=f"{settings.API_V1_PREFIX}/audio",
    tags=["audio"],
)
app.include_router(
    photo_router,
    prefix=f"{settings.API_V1_PREFIX}/photos",
    tags=["photos"],
)
