"""Bearer-secret check for cron-triggered endpoints.

Cron endpoints are called by an external scheduler with
`Authorization: Bearer <cron.secret>`. The comparison is constant-time.
An unset secret disables the endpoints instead of leaving them open.
"""

import hmac
import logging

from fastapi import Depends, Header, HTTPException

from journalcoach.api.deps import get_services
from journalcoach.services.pipeline import PipelineServices

logger = logging.getLogger(__name__)


def require_cron_secret(
    authorization: str | None = Header(None),
    services: PipelineServices = Depends(get_services),
) -> None:
    """Reject requests that do not carry the configured cron secret."""
    secret = services.config.cron.secret
    if not secret:
        logger.error("cron.secret not configured")
        raise HTTPException(status_code=500, detail="Server not configured for cron jobs")

    expected = f"Bearer {secret}"
    provided = authorization or ""
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
