import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import cache
from cms.config import settings
from cms.database import check_database, get_db
from cms.events import bus
from cms.listeners import register_listeners
from cms.logging_config import setup_logging
from cms.middleware import ApiLoggerMiddleware, SecurityHeadersMiddleware, TimingMiddleware
from cms.responses import api_error, api_success
from cms.routers import (
    admin_articles,
    admin_comments,
    admin_newsletter,
    admin_notifications,
    admin_roles,
    admin_taxonomy,
    admin_users,
    articles,
    auth,
    comments,
    media,
    newsletter,
    notifications,
    users,
)
from cms.services.exception_handler import setup_exception_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    try:
        await cache.connect()
    except Exception as exc:
        # App works without Redis
        logger.warning("Cache unavailable at startup: %s", exc)
    yield
    await cache.disconnect()


app = FastAPI(
    title=settings.APP_NAME,
    description="Content management API: articles, comments, users, media, newsletter and notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# Exception handling first: its 500 renderer must sit inside the other middleware
setup_exception_handlers(app)

# Middleware (last added runs first)
app.add_middleware(ApiLoggerMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_listeners(bus)

# Routers
app.include_router(auth.router)
app.include_router(articles.router)
app.include_router(comments.router)
app.include_router(users.router)
app.include_router(notifications.router)
app.include_router(newsletter.router)
app.include_router(media.router)
app.include_router(admin_articles.router)
app.include_router(admin_comments.router)
app.include_router(admin_users.router)
app.include_router(admin_roles.router)
app.include_router(admin_taxonomy.router)
app.include_router(admin_newsletter.router)
app.include_router(admin_notifications.router)


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    database_ok = await check_database(db)
    data = {
        "status": "healthy" if database_ok else "unhealthy",
        "version": "1.0.0",
        "database": "ok" if database_ok else "unavailable",
        "cache": "ok" if await cache.ping() else "unavailable",
        "cache_stats": cache.stats,
    }
    if not database_ok:
        return api_error("Service unavailable.", status_code=503, data=data)
    return api_success(data)
