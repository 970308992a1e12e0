from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models so Alembic can discover metadata
from mfa_gate.models import (  # noqa: E402,F401
    audit,
    bypass,
    credential,
    lockout,
    mfa_session,
)
