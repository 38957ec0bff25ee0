"""
NutriSaath Backend: Application Package Initializer
=====================================================

What: Marks the `nutrisaath` directory as a Python package.
Who:  Used by uvicorn (`nutrisaath.main:app`), Alembic and pytest.

Architecture Note:
    ┌─────────────────────────────────────┐
    │     Routes + Gate (API Layer)       │  ← HTTP concerns, auth, throttling
    ├─────────────────────────────────────┤
    │      Services (Business Logic)      │  ← token, throttle, products, chat
    ├─────────────────────────────────────┤
    │     Models & Schemas (Data)         │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │      Database (Persistence)         │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
