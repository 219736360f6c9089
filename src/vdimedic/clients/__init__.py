"""Adapters for the broker, remote job runner and messaging services."""

from vdimedic.clients.base import (
    FleetQueryError,
    FleetQueryService,
    JobNotFoundError,
    Notifier,
    ObjectNotFoundError,
    PowerActionError,
    PowerActionService,
    RemoteJobError,
    RemoteJobService,
)
from vdimedic.clients.broker import BrokerClient
from vdimedic.clients.jobs import SubprocessJobRunner

__all__ = [
    "BrokerClient",
    "FleetQueryError",
    "FleetQueryService",
    "JobNotFoundError",
    "Notifier",
    "ObjectNotFoundError",
    "PowerActionError",
    "PowerActionService",
    "RemoteJobError",
    "RemoteJobService",
    "SubprocessJobRunner",
]
