"""
NutriSaath Backend: API Routes Package
========================================

Route Inventory:
    - products.py: GET  /api/products/barcode/{ean}   (no gate)
                   GET  /api/products/search          (no gate)
    - barcode.py:  POST /api/barcode/lookup           (throttle by address)
    - chat.py:     POST /api/chat                     (auth, throttle by identity)
    - poshan.py:   GET  /api/poshan/summary           (auth)
    - health.py:   GET  /health

Routes stay thin: gate dependencies run first, then the handler extracts
parameters, calls one service and shapes the response.
"""
