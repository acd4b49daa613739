import structlog
from typing import Any, Dict, Optional

# Configure a specific logger for audit events
audit_logger = structlog.get_logger("audit")


class AuditLogger:
    """
    Writes security-relevant ceremony events to the ``audit`` logger.
    """

    def log_event(
        self,
        event_type: str,
        action: str,
        outcome: str,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        :param event_type: The category of the event (e.g., 'PASSKEY').
        :param action: The specific action performed (e.g., 'REGISTER', 'AUTHENTICATE').
        :param outcome: The result of the action (e.g., 'SUCCESS', 'FAILURE').
        :param user_id: The account the event concerns, if known.
        :param resource_id: The credential id acted upon, if any.
        :param ip_address: The client address the request came from.
        :param details: Any additional context.
        """
        log = audit_logger.warning if outcome != "SUCCESS" else audit_logger.info
        log(
            "Audit event",
            event_type=event_type,
            action=action,
            outcome=outcome,
            user_id=user_id,
            resource_id=resource_id,
            ip_address=ip_address,
            details=details or {},
        )
