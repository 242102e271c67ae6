import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tms_billing.database import Base, engine
from tms_billing.routers import advisor, billing, payment, paypal, razorpay
from tms_billing.schema_patch import apply_schema_patches

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    Base.metadata.create_all(bind=engine)
    apply_schema_patches(engine)
    logger.info("Billing API ready database=%s", engine.dialect.name)
    yield


app = FastAPI(
    title="TrackMyStartup Billing",
    description="Payment verification, subscription ledger and advisor credits",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(razorpay.router)
app.include_router(paypal.router)
app.include_router(payment.router)
app.include_router(advisor.router)
app.include_router(billing.router)


@app.get("/health")
def health_check():
    return {"ok": True}
