from .endpoints import external_router

__all__ = ["external_router"]
