"""
NutriSaath Backend: Services Layer
====================================

What:  Business logic between the routes (HTTP) and the database.
How:   Module-level singletons for stateful services, per-request objects for
       anything bound to a database session.

Service Inventory:
    - TokenService:        Bearer token verification and issuing
    - RequestThrottle:     Per-key fixed-window admission (memory or Redis store)
    - OpenFoodFactsClient: Upstream product source (httpx)
    - ProductStore:        Product cache persistence
    - ProductResolver:     Cache-then-upstream barcode resolution and search
    - LLMService (abstract) / GeminiService: Chat text generation
    - ChatService:         Nutrition assistant conversation
    - PoshanService:       Poshan summary placeholder
"""
