"""
Print Marketplace Chat API - Main Entry Point
Real-time chat between customers and print agents, bound to paid print jobs
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

# Import configuration
from printchat.config import settings

# Import API routers
from printchat.api import chat, notifications, jobs_scheduler, websocket as ws_router

# Import runtime wiring
from printchat.services.runtime import ChatRuntime, build_runtime

# Initialize logger
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(runtime: Optional[ChatRuntime] = None) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: Pre-built chat runtime; built from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan (startup/shutdown)"""
        # Startup
        logger.info("Starting Print Chat API...")

        if getattr(app.state, "chat", None) is None:
            app.state.chat = build_runtime(settings)
        await app.state.chat.start()

        logger.info(f"Application startup complete (store={app.state.chat.settings.CHAT_STORE_BACKEND})")
        yield

        # Shutdown
        await app.state.chat.shutdown()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Print Chat API",
        description="Chat sessions, messages, presence and push notifications for print jobs.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.chat = runtime

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(chat.router)  # Chat endpoints (/api/chat/*)
    app.include_router(notifications.router)  # Device tokens (/api/chat/notifications/*)
    app.include_router(jobs_scheduler.router)  # Internal jobs (/jobs/chat/*)
    app.include_router(ws_router.router)  # WebSocket endpoint (/ws/chat) and stats

    @app.get(
        "/",
        tags=["health"],
        summary="API Health Check",
        description="Check if the API is running and healthy.",
    )
    def root():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "message": "Print Chat API",
            "version": "1.0.0",
            "docs": {
                "swagger_ui": "/docs",
                "redoc": "/redoc",
                "openapi_json": "/openapi.json"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        # WebSocket keepalive configuration
        ws_ping_interval=20.0,  # Send ping every 20 seconds
        ws_ping_timeout=60.0,   # Wait 60 seconds for pong response before closing
    )
