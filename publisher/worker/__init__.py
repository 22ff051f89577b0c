"""Publish workers, maintenance sweeps and the service that runs them."""

from publisher.worker.maintenance import MaintenanceLoop, MaintenanceReport
from publisher.worker.processor import ProcessOutcome, PublishWorker
from publisher.worker.service import PublisherService

__all__ = [
    "MaintenanceLoop",
    "MaintenanceReport",
    "ProcessOutcome",
    "PublishWorker",
    "PublisherService",
]
