"""
Orchestrator module - the control loop and its wiring.

This module contains:
    - control_loop: Tick-driven detection, triage, recovery and alert sweep
    - factory: Builds a control loop from configuration
"""

from incident_orchestrator.orchestrator.control_loop import ControlLoop, TickReport
from incident_orchestrator.orchestrator.factory import (
    build_channels,
    create_control_loop,
    describe_loop,
    load_platform,
)

__all__ = [
    "ControlLoop",
    "TickReport",
    "create_control_loop",
    "build_channels",
    "load_platform",
    "describe_loop",
]
