"""
formsync delivery pipeline

Pushes queued form submissions to external audience/CRM integrations with
classification-driven recovery, a cache in front of the stores, and an
auditable integration log.

Usage:
    from formsync_ops.wiring import build_pipeline

    pipeline = build_pipeline(get_settings())
    report = pipeline.dispatcher.run_once()
"""

from .dispatcher import DispatchReport, Dispatcher
from .recovery import ErrorClassifier, RecoveryEngine
from .transport import ApiClient, ApiResponse

__version__ = "1.0.0"
__all__ = [
    "Dispatcher",
    "DispatchReport",
    "ErrorClassifier",
    "RecoveryEngine",
    "ApiClient",
    "ApiResponse",
]
