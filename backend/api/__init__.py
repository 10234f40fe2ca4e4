from .control import router as control_router

__all__ = ["control_router"]
