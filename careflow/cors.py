import logging

from starlette.middleware.cors import CORSMiddleware

from careflow.config import settings

logger = logging.getLogger(__name__)


def apply_cors(app):
    """Apply CORSMiddleware to a FastAPI application using env-configured origins."""
    origins = settings.frontend_origins()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Log the configured CORS origins so it's easy to verify at startup
    logger.info(f"CORS configured. Allowed origins: {origins}")
    return origins
