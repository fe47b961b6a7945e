import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ✅ Import All API Routes
from app.api.routes import auth, payments, subscriptions, health
from app.core import config
from app.core.errors import register_exception_handlers
from app.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.RUN_MIGRATIONS:
        from app.db.migrate import run_migrations
        run_migrations()
    # After migrations: alembic.ini logging config replaces root handlers
    setup_logging(config.LOG_LEVEL)
    logger.info("Elimufiti API started")
    yield


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="Elimufiti API", lifespan=lifespan)

# ✅ CORS: ONLY ALLOW THE FRONTEND
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_URL,
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)

register_exception_handlers(app)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(auth.router)
app.include_router(payments.router)
app.include_router(subscriptions.router)
app.include_router(health.router)


@app.get("/")
def root():
    return {"status": "Elimufiti API running"}
