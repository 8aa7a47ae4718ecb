"""Concrete reconstruction capabilities."""

from core.reconstruction.capabilities.scripted import ScriptedCapability
from core.reconstruction.capabilities.command_line import CommandLineCapability

__all__ = [
    "ScriptedCapability",
    "CommandLineCapability",
]
