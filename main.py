from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from slack_mcp import __version__
from slack_mcp.config.settings import load_settings
from slack_mcp.infrastructure import SlackInfrastructure, create_infrastructure
from slack_mcp.utils.logging import configure_logging, get_logger

logger = get_logger("health_api")


class HealthResponse(BaseModel):
    status: str
    cache_enabled: bool
    rate_limits: Dict[str, Any]


class CacheHealthResponse(BaseModel):
    enabled: bool
    healthy: bool
    health: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None


def create_app(infra: Optional[SlackInfrastructure] = None) -> FastAPI:
    """Build the health API; the infrastructure is created on first use unless given"""
    app = FastAPI(
        title="Slack MCP Server Health API",
        description="Health and cache status for the Slack MCP server",
        version=__version__
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    state: Dict[str, Optional[SlackInfrastructure]] = {"infra": infra}

    def get_infra() -> SlackInfrastructure:
        if state["infra"] is None:
            settings = load_settings()
            configure_logging(settings.log_level)
            state["infra"] = create_infrastructure(settings)
        return state["infra"]

    @app.on_event("shutdown")
    async def shutdown_event():
        """Clean up resources when the app shuts down."""
        if state["infra"] is not None:
            await state["infra"].aclose()

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "name": "Slack MCP Server",
            "version": __version__,
            "status": "operational"
        }

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        current = get_infra()
        healthy = current.cache_service is None or current.cache_service.get_health_status()["healthy"]
        return {
            "status": "healthy" if healthy else "degraded",
            "cache_enabled": current.cache_enabled,
            "rate_limits": current.rate_limit_metrics.snapshot(),
        }

    @app.get("/health/cache", response_model=CacheHealthResponse)
    async def cache_health():
        current = get_infra()
        if current.cache_service is None:
            return {"enabled": False, "healthy": True}

        health = current.cache_service.get_health_status()
        return {
            "enabled": True,
            "healthy": health["healthy"],
            "health": health,
            "metrics": current.cache_service.get_metrics().to_dict(),
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=load_settings().health_port, reload=True)
