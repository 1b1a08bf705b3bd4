from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsync.config import Settings, settings as default_settings
from chatsync.logging_config import setup_logging
from chatsync.store.local import LocalMessageStore
from chatsync.websocket_manager import ConnectionManager


def create_app(database_url: Optional[str] = None, settings: Settings = default_settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        store = LocalMessageStore.from_url(database_url or settings.DATABASE_URL, settings=settings)
        await store.create_tables()
        app.state.store = store
        app.state.connections = ConnectionManager(store)
        yield
        await app.state.connections.close_all()
        await store.close()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        description="chatsync Message Store Service",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from chatsync.api.v1 import sync, websocket

    app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])
    app.include_router(websocket.router, prefix="/api/v1/ws", tags=["websocket"])

    @app.get("/")
    async def root():
        return {"message": settings.APP_NAME, "version": settings.VERSION}

    @app.get("/health")
    async def health():
        return {"status": "ok", "connected_viewers": len(app.state.connections.get_connected_users())}

    return app


app = create_app()
