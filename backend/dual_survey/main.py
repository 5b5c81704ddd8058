"""
Dual Survey Engine - FastAPI Application

Main entry point for the dual-survey reconciliation backend.

Architecture:
- SurveySubmission (AMMC) + SurveySubmission (NIA) → DualCompletionTrigger
- DualCompletionTrigger → ReportMerger → MergedReport + ConflictFlags
- MergedReport → ReleaseGate → released / withheld
- Released MergedReport → PaymentDecisionEngine → PaymentDecision
- ScheduledRunner sweeps anything the trigger missed
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import LOG_LEVEL, SCHEDULER_ENABLED
from .database import init_db
from .routers import reconciliation_router, payment_router, scheduler_router
from .services.pipeline import scheduled_runner

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and start the scheduled runner."""
    init_db()
    if SCHEDULER_ENABLED:
        await scheduled_runner.start()
    else:
        logger.info("Scheduled runner disabled by configuration")
    yield
    await scheduled_runner.stop()


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Dual Survey Engine",
    description="""
    Dual Survey Engine - Reconciliation of AMMC and NIA property surveys

    Two independent organizations survey the same property. Once both
    submissions are in, the engine merges them into one report, flags
    high-impact conflicts for review, gates the report's release and
    records a payment decision.

    ## Pipeline
    1. **Dual-Completion Trigger**: second submission → merge
    2. **Report Merger**: two submissions → MergedReport + conflicts
    3. **Release Gate**: MergedReport → released / withheld
    4. **Payment Decision Engine**: released report → approve / conditional / reject / manual review

    ## Key Principles
    - At most one merged report per policy
    - Recommendations merge conservatively (reject > request_more_info > approve)
    - Unresolved critical conflicts always withhold the report
    - A scheduled sweep recovers anything the trigger missed
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(reconciliation_router)
app.include_router(payment_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Dual Survey Engine",
        "version": __version__,
        "description": "Dual-survey reconciliation, release gating and payment decisions",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# For running with: python -m dual_survey.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
