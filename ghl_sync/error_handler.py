"""
Error handling and logging utilities with Slack webhook integration.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from functools import wraps
import httpx
from enum import Enum

from ghl_sync.config import settings


logger = logging.getLogger(__name__)


class ErrorSeverity(str, Enum):
    """Error severity levels"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CRMSyncError(Exception):
    """Base exception for CRM sync errors"""

    code = "sync_error"
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        super().__init__(self.message)


class NotConfigured(CRMSyncError):
    """Tenant (or deployment) lacks a CRM identifier the operation requires"""

    code = "not_configured"
    default_severity = ErrorSeverity.LOW


class PrerequisiteMissing(CRMSyncError):
    """An upstream link the operation depends on does not exist yet"""

    code = "prerequisite_missing"
    default_severity = ErrorSeverity.LOW


class CustomerNotSynced(PrerequisiteMissing):
    """Customer has no CRM contact id; run Contact Sync first"""

    code = "customer_not_synced"


class MappingError(CRMSyncError):
    """A single record could not be translated to or from the CRM shape"""

    code = "mapping_error"
    default_severity = ErrorSeverity.LOW


class IdentityConflict(CRMSyncError):
    """More than one candidate matched, or the match is bound elsewhere"""

    code = "identity_conflict"


class RecordNotFound(CRMSyncError):
    """Local tenant, job, customer or appointment does not exist"""

    code = "not_found"
    default_severity = ErrorSeverity.LOW


class RemoteError(CRMSyncError):
    """Error calling the GoHighLevel API"""

    code = "remote_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: str = "",
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.response_text = response_text[:500]
        super().__init__(message, severity=severity, context=context)


class TransientRemoteError(RemoteError):
    """Network failure, 5xx or 429; retried inside the client"""

    code = "transient_remote_error"
    default_severity = ErrorSeverity.HIGH


class RemoteRejected(RemoteError):
    """Non-retryable 4xx from the CRM (bad payload, auth failure)"""

    code = "remote_rejected"
    default_severity = ErrorSeverity.HIGH


class SchedulingConflict(RemoteRejected):
    """CRM refused an appointment because the slot is taken"""

    code = "scheduling_conflict"
    default_severity = ErrorSeverity.LOW


class SyncAlreadyRunning(CRMSyncError):
    """Another run holds the (tenant, entity type) lock"""

    code = "sync_already_running"
    default_severity = ErrorSeverity.LOW


def format_alert(
    error: Exception,
    function_name: str,
    severity: ErrorSeverity,
    context: Optional[Dict[str, Any]] = None,
) -> str:
    """Plain-text alert body shared by the local log line and Slack"""
    lines = [
        f"[{severity.value.upper()}] GoHighLevel sync: {function_name}",
        f"{type(error).__name__}: {error}",
    ]
    if isinstance(error, CRMSyncError):
        lines.append(f"Code: {error.code}")
        context = {**error.context, **(context or {})}

    for key, value in (context or {}).items():
        text = str(value)
        if isinstance(value, (list, dict)) and len(text) > 200:
            text = text[:200] + "..."
        lines.append(f"  {key}: {text}")

    lines.append(f"At: {datetime.now(timezone.utc).isoformat(timespec='seconds')}")
    return "\n".join(lines)


class SlackNotifier:
    """Posts sync alerts to a Slack incoming webhook"""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = (
            webhook_url if webhook_url is not None else settings.slack_webhook_url
        )
        self.client: Optional[httpx.AsyncClient] = None

    async def send_error(
        self,
        error: Exception,
        function_name: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Log the alert and, when a webhook is configured, post it to Slack"""
        message = format_alert(error, function_name, severity, context)

        # The local log line is the record of truth; Slack is best effort
        logger.error(message, extra={"severity": severity.value, "function": function_name})

        if not self.webhook_url:
            return

        try:
            if self.client is None:
                self.client = httpx.AsyncClient(timeout=10.0)
            response = await self.client.post(self.webhook_url, json={"text": message})
        except httpx.HTTPError as e:
            logger.warning(f"Could not reach Slack for {function_name}: {e}")
            return

        if response.status_code != 200:
            logger.warning(
                f"Slack rejected alert for {function_name}: "
                f"{response.status_code} {response.text[:200]}"
            )

    async def close(self):
        """Close the HTTP client"""
        if self.client is not None:
            await self.client.aclose()
            self.client = None


# Global notifier instance
slack_notifier = SlackNotifier()


def safe_scheduled_job(func):
    """
    Keep APScheduler alive when a periodic sync blows up.

    The wrapped coroutine's failures are logged with a traceback and sent to
    Slack, then swallowed so the next interval still fires.
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        job_name = func.__name__
        started = time.monotonic()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            elapsed = time.monotonic() - started
            logger.error(
                f"Scheduled job '{job_name}' failed after {elapsed:.1f}s: {e}",
                exc_info=True,
            )
            await slack_notifier.send_error(
                error=e,
                function_name=f"scheduled_job:{job_name}",
                severity=ErrorSeverity.HIGH,
                context={"elapsed_seconds": round(elapsed, 1)},
            )
            return None

        logger.info(f"Scheduled job '{job_name}' finished in {time.monotonic() - started:.1f}s")
        return result

    return wrapper


def setup_logging(level: Optional[str] = None):
    """Configure application logging"""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
