"""
FastAPI REST API layer.

    - routes.py: /health, /metrics and error rendering
    - routes_books.py: library endpoints (/api/books)
    - routes_tts.py: speech endpoints (/api/tts)
    - delivery.py: byte-range file and stream responses
    - schemas.py: request/response models
    - dependencies.py: dependency injection
"""
