# Platform core: logging setup and background task scheduling

from livechat_core.core.logging import (
    configure_logging,
    tenant_context,
)
from livechat_core.core.scheduler import (
    PeriodicTask,
    PeriodicTaskRunner,
    TaskMetrics,
)

__all__ = [
    "configure_logging",
    "tenant_context",
    "PeriodicTask",
    "PeriodicTaskRunner",
    "TaskMetrics",
]
