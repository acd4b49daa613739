from typing import Any, Dict

import structlog

from passkey_gate.core.errors import GatewayError, SessionIssuanceFailed
from passkey_gate.services.identity import IdentityBackend

logger = structlog.get_logger()


class SessionIssuer:
    """Mints a bearer session for an account that completed a passkey ceremony."""

    def __init__(self, identity: IdentityBackend):
        self.identity = identity

    async def issue(self, user_id: str) -> Dict[str, Any]:
        try:
            session = await self.identity.mint_session(user_id)
        except GatewayError as e:
            logger.error("Session issuance failed", user_id=user_id, error=e.code, detail=e.detail)
            raise SessionIssuanceFailed(detail=e.detail or e.message) from e

        if not session:
            raise SessionIssuanceFailed(detail="Identity backend returned an empty session")

        logger.info("Session issued", user_id=user_id)
        return session
