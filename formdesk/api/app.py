"""
FastAPI application factory for formdesk.

Creates and configures the FastAPI app, picks the template store,
initializes the session store, the mail transport and the routes.

Run with:
    uvicorn formdesk.api.app:app --reload
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from formdesk.api.routes import configure_routes, router
from formdesk.core.assignments import DEFAULT_FORM_LINK_BASE_URL, AssignmentService
from formdesk.core.mail import RecordingMailTransport, SmtpMailTransport
from formdesk.core.service import FormService
from formdesk.core.session import SessionStore
from formdesk.core.store import InMemoryFormStore, SQLiteFormStore

# Load environment variables from .env
load_dotenv()

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _is_truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    application = FastAPI(
        title="formdesk",
        description="Dynamic form templates, multi-page fill-out and responses",
        version="0.1.0",
    )

    # CORS, all origins unless configured
    allowed_origins = os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Template store: SQLite when a path is configured, otherwise in memory
    db_path = os.getenv("FORMDESK_DB_PATH")
    if db_path:
        store = SQLiteFormStore(db_path)
        logger.info("Using SQLite store at %s", db_path)
    else:
        store = InMemoryFormStore()
        logger.warning("FORMDESK_DB_PATH not set; templates and responses are kept in memory")

    strict_submit = _is_truthy(os.getenv("STRICT_SUBMIT"), default=True)
    service = FormService(store, strict_submit=strict_submit)

    # Mail transport
    mailer = SmtpMailTransport.from_env()
    if mailer is None:
        logger.warning("SMTP_HOST not set; invitation e-mails are recorded, not sent")
        mailer = RecordingMailTransport()

    assignment_service = AssignmentService(
        store,
        mailer=mailer,
        form_link_base_url=os.getenv("FORM_LINK_BASE_URL", DEFAULT_FORM_LINK_BASE_URL),
    )

    # Initialize session store
    session_timeout = int(os.getenv("SESSION_TIMEOUT_SECONDS", "1800"))
    session_store = SessionStore(timeout_seconds=session_timeout)

    # Configure routes with dependencies
    configure_routes(service, session_store, assignment_service)
    application.include_router(router, prefix="/api")

    @application.on_event("startup")
    async def on_startup():
        logger.info("formdesk backend starting up")
        logger.info("Store: %s", type(store).__name__)
        logger.info("Session timeout: %d seconds", session_timeout)

    return application


# Create the app instance (used by uvicorn)
app = create_app()
