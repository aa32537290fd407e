"""Helpers that record system events into the audit log.

Each helper builds the ``details`` object the activity aggregator reads back
(``actor``, ``resourceType``, ``resourceId``, ``resourceName``, ``metadata``,
``ipAddress``, ``userAgent``) and appends it off the event loop.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, TypedDict

from src.activity.audit_log import AuditLogStore
from src.activity.models import ActivityActor, ActivityChange
from src.observability.metrics import ACTIVITY_LOGGED_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "admin"
DEFAULT_USER_NAME = "Admin User"


class RequestInfo(TypedDict, total=False):
    ip_address: str
    user_agent: str


def extract_request_info(headers: Mapping[str, str]) -> RequestInfo:
    """Pull client IP and user agent from request headers (case-insensitive).

    The first hop of ``X-Forwarded-For`` wins over ``X-Real-IP``.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    info = RequestInfo()
    forwarded = lowered.get("x-forwarded-for", "").split(",")[0].strip()
    ip_address = forwarded or lowered.get("x-real-ip", "").strip()
    if ip_address:
        info["ip_address"] = ip_address
    if lowered.get("user-agent"):
        info["user_agent"] = lowered["user-agent"]
    return info


def user_actor(user_id: str = DEFAULT_USER_ID) -> ActivityActor:
    name = DEFAULT_USER_NAME if user_id == DEFAULT_USER_ID else user_id
    return ActivityActor(id=user_id, type="user", name=name)


def system_actor() -> ActivityActor:
    return ActivityActor(id="system", type="system", name="System")


async def log_activity(
    log: AuditLogStore,
    actor: ActivityActor,
    action: str,
    resource_type: str,
    resource_id: str,
    resource_name: str,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """Append one activity. Storage errors propagate to the caller."""
    details: dict[str, Any] = {
        "actor": dict(actor),
        "resourceType": resource_type,
        "resourceId": resource_id,
        "resourceName": resource_name,
    }
    if metadata:
        details["metadata"] = metadata
    if ip_address:
        details["ipAddress"] = ip_address
    if user_agent:
        details["userAgent"] = user_agent

    await asyncio.to_thread(log.append, action, details, True, actor["id"])
    ACTIVITY_LOGGED_TOTAL.labels(action=action).inc()
    logger.debug("Logged activity %s on %s/%s by %s", action, resource_type, resource_id, actor["id"])


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


async def log_service_action(
    log: AuditLogStore,
    action: str,
    service_name: str,
    user_id: str = DEFAULT_USER_ID,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> None:
    """Record a service lifecycle action (``started``, ``stopped``, ``restarted``)."""
    await log_activity(
        log, user_actor(user_id), action, "service", f"svc-{service_name}", service_name, metadata, ip_address
    )


async def log_deployment(
    log: AuditLogStore,
    environment: str,
    version: str,
    user_id: str = DEFAULT_USER_ID,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> None:
    await log_activity(
        log,
        user_actor(user_id),
        "deployed",
        "deployment",
        f"deploy-{environment}-{version}",
        f"{environment.capitalize()} Deployment",
        {**(metadata or {}), "version": version, "environment": environment},
        ip_address,
    )


async def log_config_change(
    log: AuditLogStore,
    config_name: str,
    changes: list[ActivityChange],
    user_id: str = DEFAULT_USER_ID,
    ip_address: str | None = None,
) -> None:
    """Record a configuration edit; ``changes`` surfaces on the activity as-is."""
    config_id = "config-" + config_name.lower().replace(" ", "-")
    await log_activity(
        log,
        user_actor(user_id),
        "config_changed",
        "config",
        config_id,
        config_name,
        {"changes": [dict(c) for c in changes]},
        ip_address,
    )


async def log_backup_action(
    log: AuditLogStore,
    action: str,
    backup_id: str,
    backup_name: str,
    metadata: dict[str, Any] | None = None,
    user_id: str | None = None,
) -> None:
    """Record ``backup_created`` / ``backup_restored``. No user means a scheduled (system) backup."""
    actor = user_actor(user_id) if user_id else system_actor()
    await log_activity(log, actor, action, "backup", backup_id, backup_name, metadata)


async def log_database_action(
    log: AuditLogStore,
    action: str,
    operation: str,
    user_id: str = DEFAULT_USER_ID,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> None:
    await log_activity(log, user_actor(user_id), action, "database", "database", operation, metadata, ip_address)


async def _log_secret(
    log: AuditLogStore,
    action: str,
    secret_id: str,
    secret_name: str,
    user_id: str,
    metadata: dict[str, Any] | None,
    request_info: RequestInfo | None,
) -> None:
    info = request_info or RequestInfo()
    await log_activity(
        log,
        user_actor(user_id),
        action,
        "secret",
        secret_id,
        secret_name,
        metadata,
        info.get("ip_address"),
        info.get("user_agent"),
    )


async def log_secret_access(
    log: AuditLogStore,
    secret_id: str,
    secret_name: str,
    user_id: str = DEFAULT_USER_ID,
    metadata: dict[str, Any] | None = None,
    request_info: RequestInfo | None = None,
) -> None:
    await _log_secret(log, "secret_accessed", secret_id, secret_name, user_id, metadata, request_info)


async def log_secret_creation(
    log: AuditLogStore,
    secret_id: str,
    secret_name: str,
    user_id: str = DEFAULT_USER_ID,
    metadata: dict[str, Any] | None = None,
    request_info: RequestInfo | None = None,
) -> None:
    await _log_secret(log, "created", secret_id, secret_name, user_id, metadata, request_info)


async def log_secret_deletion(
    log: AuditLogStore,
    secret_id: str,
    secret_name: str,
    user_id: str = DEFAULT_USER_ID,
    metadata: dict[str, Any] | None = None,
    request_info: RequestInfo | None = None,
) -> None:
    await _log_secret(log, "deleted", secret_id, secret_name, user_id, metadata, request_info)
