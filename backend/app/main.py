import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from core.database import init_db
from core.exceptions import register_exception_handlers

# ========== Payments ==========
from modules.payments.api import payment_router
from modules.payments.monitoring import setup_metrics_endpoint
from modules.payments.services import initialize_split_payment_services

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# FastAPI app with enhanced OpenAPI documentation
app = FastAPI(
    title="TripMates - Group Payments API",
    description="""
    Group booking payments: split a booking's cost between participants,
    collect each share, and refund when a group falls short.

    ## Features

    * **Split Payments** - Equal or custom shares with a minimum-payment threshold
    * **Individual Payments** - Per-participant charges through Stripe
    * **Refunds** - Request, review and processor-side refunds
    * **Realtime** - WebSocket status feed per split payment

    ## Authentication

    Endpoints require a bearer JWT issued by the auth provider.
    """,
    version="1.0.0",
    debug=settings.debug,
)

# Register exception handlers for consistent error responses
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payment_router, prefix="/api/v1/payments", tags=["Payments"])
setup_metrics_endpoint(app)


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup"""
    await init_db()
    initialize_split_payment_services()
    logger.info(f"{settings.app_name} started ({settings.environment})")


@app.get("/")
def read_root():
    return {"message": f"{settings.app_name} is running"}
