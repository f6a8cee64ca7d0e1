from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from datetime import datetime, timezone
import os
import logging

from database import db, client, check_db_connection
from points_ledger import __version__
from points_ledger.db_init import ensure_indexes
from points_ledger.routes import points_router, ai_router, alipay_router

# Create the main app
app = FastAPI(title="Points Ledger - Rewriting Service Backend", version=__version__)

api_router = APIRouter(prefix="/api")
api_router.include_router(points_router)
api_router.include_router(ai_router)
api_router.include_router(alipay_router)


@app.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Unique indexes back order numbers and ledger idempotency
    await ensure_indexes(db)
    logger.info("Points ledger indexes ensured")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
