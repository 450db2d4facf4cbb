"""
Main entry point for the Database Query API.

This application turns natural-language questions into SQL over a user's own
database:
- Schema discovery with catalog, restricted and row-sampling fallbacks
- Expiring per-connection schema cache (in-memory or Redis)
- SELECT-only safety gate before anything is executed
- Query history for every attempt, successful or not
- JWT-based authentication
"""

from api import app
from config import settings, configure_logging

if __name__ == "__main__":
    import uvicorn

    configure_logging(settings.LOG_LEVEL)

    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
