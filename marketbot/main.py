from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketbot.config import settings
from marketbot.database import init_db
from marketbot.logging_config import get_logger, setup_logging
from marketbot.routers import admin, media, message, webhook

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Marketbot API",
    description="Conversational listing engine for a campus marketplace",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(message.router)
app.include_router(media.router)
app.include_router(admin.router)


@app.on_event("startup")
def create_tables() -> None:
    if settings.database_url.startswith("sqlite"):
        init_db()
        logger.info("SQLite schema ensured")


@app.get("/health")
async def health():
    return {"status": "ok"}
