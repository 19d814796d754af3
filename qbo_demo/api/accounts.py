"""JSON endpoints. Errors are returned as application/problem+json."""

import logging

from fastapi import APIRouter

from qbo_demo.api.deps import Auth, QBOService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/accounts")
async def list_accounts(ctx: Auth, qbo: QBOService):
    """Active chart-of-accounts entries of the connected company."""
    result = await qbo.get_accounts(ctx)
    logger.info(f"Returned {result['count']} accounts for realm {ctx.realm_id}")
    return result
