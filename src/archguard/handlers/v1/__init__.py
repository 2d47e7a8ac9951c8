from .endpoints import v1_router

__all__ = ["v1_router"]
