"""
FastAPI application entrypoint.

Run locally:  uvicorn fhir_bridge.main:app --reload
"""

import logging

from fastapi import FastAPI

from fhir_bridge.api.routes import router
from fhir_bridge.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")

app = FastAPI(
    title="Clinic FHIR Bridge",
    description=(
        "Offline-first reliability core for a clinic-to-FHIR bridge: "
        "Client Registry identity resolution with synthetic fallback and a "
        "durable, time-windowed retry queue for outbound bundles."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")
