from api.routes_engine import router

__all__ = ["router"]
