"""API routers."""

from app.api.v1.routers.prompt_templates import router as prompt_templates_router


__all__ = [
    "prompt_templates_router",
]
