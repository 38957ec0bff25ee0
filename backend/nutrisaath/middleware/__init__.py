# Middleware package init
"""
NutriSaath Backend: Middleware Package
========================================

What:  Cross-cutting concerns applied around route handlers.

Global middleware chain (every request):
    Request → [Request ID] → [Access Logging] → [CORS] → Route

Per-route gate (gate.py, FastAPI dependencies):
    [auth] → [throttle] → handler

    Throttling is per route group rather than global: chat and barcode
    lookup each have their own policy and key space.
"""
