from chatstack.api.endpoints import router

__all__ = ["router"]
