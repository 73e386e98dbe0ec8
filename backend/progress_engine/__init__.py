"""Progress & integrity engine for the flashcard learning backend.

This package exposes the review scheduler, the XP/streak ledger, the
streak projections and the request rate limiter, plus the FastAPI
application that wires them to HTTP. Individual modules contain the
concrete implementations and documentation.
"""
