"""
MFA Gate API

Second-factor service for applications that have already authenticated a
principal. It provides:
- TOTP enrollment with QR provisioning and one-time backup codes
- Code verification with lockout and replay protection
- Per-device MFA sessions
- Emergency bypass grants for allowlisted principals
- Administrative reset, unlock, audit listing and cleanup
"""
import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mfa_gate.api.deps import get_gate
from mfa_gate.api.routers import admin, enrollment, verification
from mfa_gate.core.config import get_settings
from mfa_gate.core.errors import MFAError, mfa_error_handler
from mfa_gate.core.logging import configure_logging
from mfa_gate.db.base import Base
from mfa_gate.services.gate import MFAGate

settings = get_settings()

configure_logging(settings)

logger = logging.getLogger(__name__)

docs_url = "/docs" if settings.enable_docs else None
redoc_url = "/redoc" if settings.enable_docs else None
openapi_url = "/openapi.json" if settings.enable_docs else None

app = FastAPI(title=settings.app_name, version="0.1.0", docs_url=docs_url, redoc_url=redoc_url, openapi_url=openapi_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

app.add_exception_handler(MFAError, mfa_error_handler)

app.include_router(enrollment.router)
app.include_router(verification.router)
app.include_router(admin.router)


@app.on_event("startup")
def on_startup():
    if settings.credential_store == "sql":
        from mfa_gate.db.session import engine

        Base.metadata.create_all(bind=engine)
    logger.info(f"{settings.app_name} started with the {settings.credential_store} credential store")


@app.get("/health")
def health(gate: MFAGate = Depends(get_gate)):
    """Health check for load balancers; reports the credential store separately."""
    return gate.health()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mfa_gate.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
