"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database connectivity (SELECT 1 through the async engine)
    • Channel configuration (how many delivery channels are usable)
    • Disk space for the database and stored attachments

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_database(bind: Optional[AsyncEngine]) -> ComponentHealth:
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    if bind is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No database engine (in-memory storage)"
        return comp
    try:
        async with bind.connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.message = "Connection available"
        comp.details = {"backend": bind.url.get_backend_name()}
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(channel_status: Optional[Dict[str, Any]]) -> ComponentHealth:
    """Usable channels: none is unhealthy, some is degraded."""
    comp = ComponentHealth(name="channels")
    if channel_status is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Channel configuration not loaded"
        return comp

    email_ok = any(acct.get("configured") for acct in channel_status["email"].values())
    flags = {
        "email": email_ok,
        "chat": bool(channel_status["chat"].get("configured")),
        "social": bool(channel_status["social"].get("configured")),
    }
    usable = [name for name, ok in flags.items() if ok]
    comp.details = flags

    if not usable:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No delivery channel configured"
    elif len(usable) < len(flags):
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Configured: {', '.join(usable)}"
    else:
        comp.message = "All channels configured"
    return comp


async def check_disk_space(path: str = ".") -> ComponentHealth:
    """Check available disk space."""
    comp = ComponentHealth(name="disk_space")
    start = time.monotonic()
    try:
        total, used, free = shutil.disk_usage(path)
        free_gb = free / (1024 ** 3)
        comp.details = {
            "total_gb": round(total / (1024 ** 3), 1),
            "free_gb": round(free_gb, 1),
            "used_pct": round((used / total) * 100, 1),
        }

        if free_gb < 0.5:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = f"Low disk space: {free_gb:.1f} GB free"
        elif free_gb < 2.0:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Disk space warning: {free_gb:.1f} GB free"
        else:
            comp.message = f"{free_gb:.1f} GB free"
    except OSError as e:
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    bind: Optional[AsyncEngine] = None,
    channel_status: Optional[Dict[str, Any]] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_database(bind))
    report.components.append(await check_channels(channel_status))
    report.components.append(await check_disk_space())

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
