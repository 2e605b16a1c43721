"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA bounded context and the
application entry point.

DO NOT add SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
