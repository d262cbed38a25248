from __future__ import annotations

from typing import Any, Dict, Optional

from gymauth.logging import get_logger, sanitize_error_message
from gymauth.storage.models import ActivityLogEntry, DeviceInfo, SecurityEvent, Severity

logger = get_logger(__name__)


class AuditLogger:
    """Writes the activity trail and security events.

    Audit writes must never change the outcome of the operation being
    audited: store failures are logged and swallowed here.
    """

    def __init__(self, store) -> None:
        self.store = store

    def log_activity(
        self,
        user_id: Optional[int],
        action: str,
        *,
        resource: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        device_info: Optional[DeviceInfo] = None,
        success: bool = True,
        severity: Severity | str = Severity.INFO,
    ) -> None:
        try:
            level = Severity(severity)
        except ValueError:
            logger.warning("activity_unknown_severity", severity=str(severity))
            level = Severity.INFO
        device = device_info or DeviceInfo()
        entry = ActivityLogEntry(
            action=action,
            user_id=user_id,
            resource=resource,
            details=dict(details or {}),
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            success=success,
            severity=level.value,
        )
        logger.info(
            "activity",
            action=action,
            user_id=user_id,
            resource=resource,
            success=success,
            ip_address=device.ip_address,
        )
        try:
            self.store.insert_activity_log(entry)
        except Exception as exc:
            logger.error(
                "activity_log_write_failed",
                action=action,
                error=sanitize_error_message(str(exc)),
            )

    def log_security_event(
        self,
        event_type: str,
        *,
        severity: Severity | str = Severity.MEDIUM,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> None:
        try:
            level = Severity(severity)
        except ValueError:
            logger.warning("security_event_unknown_severity", severity=str(severity))
            level = Severity.MEDIUM
        device = device_info or DeviceInfo()
        event = SecurityEvent(
            event_type=event_type,
            severity=level.value,
            user_id=user_id,
            details=dict(details or {}),
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )
        log = logger.warning if level in (Severity.HIGH, Severity.CRITICAL) else logger.info
        log(
            "security_event",
            event_type=event_type,
            severity=level.value,
            user_id=user_id,
            ip_address=device.ip_address,
        )
        try:
            self.store.insert_security_event(event)
        except Exception as exc:
            logger.error(
                "security_event_write_failed",
                event_type=event_type,
                error=sanitize_error_message(str(exc)),
            )
