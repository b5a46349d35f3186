import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from careportal.config import get_settings
from careportal.core.logging import setup_logging
from careportal.database import create_tables
from careportal.routers import slots, consultations, consents, consent_forms, health

settings = get_settings()

# --- Logging Configuration ---
logger = setup_logging(
    json_output=settings.is_production,
    level=logging.DEBUG if settings.debug else logging.INFO,
)

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info("careportal_started", environment=settings.environment, timezone=settings.clinic_timezone)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(slots.router, prefix="/api/v1")
app.include_router(consultations.router, prefix="/api/v1")
app.include_router(consents.router, prefix="/api/v1")
app.include_router(consent_forms.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


@app.get("/health", tags=["Health Checks"])
def ping():
    return {"status": "ok", "version": settings.app_version}


if __name__ == "__main__":
    uvicorn.run("careportal.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
