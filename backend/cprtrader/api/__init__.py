"""API router initialization"""
from cprtrader.api.routes import router as api_router

__all__ = ["api_router"]
