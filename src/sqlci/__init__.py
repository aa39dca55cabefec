"""
SQLCI - SQL Server containers for CI integration tests
"""

__version__ = "0.1.0"

from .errors import (
    LaunchError,
    OrchestratorError,
    ProvisionError,
    ReadinessExhausted,
    TeardownError,
)
from .models import LifecycleSettings
from .orchestrator import ContainerOrchestrator

__all__ = [
    "ContainerOrchestrator",
    "LifecycleSettings",
    "LaunchError",
    "OrchestratorError",
    "ProvisionError",
    "ReadinessExhausted",
    "TeardownError",
]
