import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.config import Settings, load_settings
from app.container import Container, build_container
from app.routers import auth, conversations, directory, notifications, requests, reviews
from app.services.database import ORDERED_QUERY_INDEXES

logger = logging.getLogger(__name__)


def create_app(container: Optional[Container] = None, settings: Optional[Settings] = None) -> FastAPI:
    if container is None:
        container = build_container(settings or load_settings())
    settings = container.settings
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Service Broker API", version="0.1.0")
    app.state.container = container

    allow_any_origin = len(settings.cors_origins) == 1 and settings.cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if not (len(settings.trusted_hosts) == 1 and settings.trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    app.include_router(auth.router)
    app.include_router(requests.router)
    app.include_router(conversations.router)
    app.include_router(notifications.router)
    app.include_router(reviews.router)
    app.include_router(directory.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready():
        with container.db.session() as conn:
            present = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'").fetchall()
            }
        missing = sorted(name for name in ORDERED_QUERY_INDEXES if name not in present)
        return {
            "status": "ready",
            "push_configured": container.notifications.push_enabled,
            "missing_indexes": missing,
            "live_subscriptions": container.db.feed.active_count(),
        }

    logger.info("Service broker started (db=%s)", settings.db_path)
    return app


app = create_app()
