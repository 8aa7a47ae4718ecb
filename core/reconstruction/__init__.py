"""
Reconstruction capabilities: the black-box photogrammetry engines.

Provides:
- Detail levels, asset format tags and the Asset record
- Capability event types (progress, completed, error, cancelled)
- Abstract base class for capabilities
- Concrete capabilities (scripted, command line)
"""

from core.reconstruction.base_capability import (
    Asset,
    AssetFormat,
    BaseCapability,
    CancelledEvent,
    CapabilityEvent,
    CompletedEvent,
    DetailLevel,
    ErrorEvent,
    ProgressEvent,
)
from core.reconstruction.capabilities import (
    CommandLineCapability,
    ScriptedCapability,
)

__all__ = [
    "Asset",
    "AssetFormat",
    "BaseCapability",
    "CancelledEvent",
    "CapabilityEvent",
    "CompletedEvent",
    "DetailLevel",
    "ErrorEvent",
    "ProgressEvent",
    "CommandLineCapability",
    "ScriptedCapability",
]
