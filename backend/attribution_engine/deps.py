"""Dependency providers for the internal API."""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from attribution_engine.config import get_settings
from attribution_engine.database import get_db
from attribution_engine.services.attribution_service import AttributionService


def verify_internal_api_key(x_internal_api_key: Optional[str] = Header(None)) -> bool:
    """Verify the X-Internal-Api-Key header for protected endpoints."""
    expected = get_settings().INTERNAL_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API not configured",
        )
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return True


def get_attribution_service(request: Request, db: Session = Depends(get_db)) -> AttributionService:
    # Limits live on the app so every request shares one set of caps
    return AttributionService(db, limits=getattr(request.app.state, "forwarding_limits", None))
