"""Vocilia Verification - API Routers"""
from .cycles import router as cycles_router
from .databases import router as databases_router
from .transactions import router as transactions_router
from .fraud import router as fraud_router
from .scheduler import router as scheduler_router

__all__ = [
    "cycles_router",
    "databases_router",
    "transactions_router",
    "fraud_router",
    "scheduler_router",
]
