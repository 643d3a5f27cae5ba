"""
Core module - shared building blocks.

This module contains:
    - config: JSON + environment configuration
    - constants: Enumerations and shared constants
    - exceptions: Error hierarchy with error categories
    - logging: Logging setup and structured events
    - models: Domain records
    - protocols: Capability interfaces (metrics, platform, notifiers)
    - utils: IDs, time helpers, retry
"""
