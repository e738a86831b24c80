"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Apply process-level logging configuration
- Register routes

LLM clients are built per session (keys may arrive with START).
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from observability.logger import log_event, set_log_level

from server.routes import register_routes


def create_app(config: AppConfig | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    set_log_level(config.log_level)

    app = FastAPI(title="Call Transcript API")

    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if not config.deepgram_api_key:
        log_event({
            "event_type": "CONFIG_WARNING",
            "level": "WARNING",
            "message": "DEEPGRAM_API_KEY not set; clients must send api_key_stt with START",
        })
    if not config.llm_api_key:
        log_event({
            "event_type": "CONFIG_WARNING",
            "level": "WARNING",
            "message": "no LLM API key set; sessions fall back to keyword analysis",
        })

    # Routes
    register_routes(app)

    return app
