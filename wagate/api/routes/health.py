"""Health check endpoint."""

from fastapi import APIRouter, Request

from wagate import __version__

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health_check(request: Request) -> dict:
    controller = request.app.state.controller
    return {
        "status": "ok",
        "version": __version__,
        "store_backend": request.app.state.settings.STORE_BACKEND,
        "active_sessions": len(controller.active_identities),
    }
