"""
HeatCare Monitoring Server — Application Factory
"""

import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from heatcare import settings

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("heatcare-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="HeatCare Monitoring Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from heatcare.routers import health, monitoring_api

app.include_router(health.router)
app.include_router(monitoring_api.router)


# ── 4. Startup / shutdown ──
@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("HeatCare Monitoring Server Starting")
    logger.info("Listening on port: %s", settings.PORT)

    # Initialize monitoring before serving requests
    try:
        from heatcare.monitoring.setup import initialize_monitoring
        await initialize_monitoring()
        logger.info("Monitoring scheduler initialized")
    except Exception as e:
        logger.warning("Monitoring failed to start — running without it: %s", e)

    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    try:
        from heatcare.monitoring.setup import shutdown_monitoring
        await shutdown_monitoring()
    except Exception as e:
        logger.warning("Monitoring shutdown error: %s", e)
