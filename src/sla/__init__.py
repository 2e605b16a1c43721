"""
SLA Breach Tracking Module
==========================

Bounded Context for Service Level Agreement deadline tracking.

Responsibilities:
- Resolve which SLA policy applies to a ticket (team > default > fallback)
- Keep one SLA instance per ticket in sync with the ticket's deadlines
- Scan due instances, record breaches exactly once, escalate priority
- Notify team leads and on-call after the breach is committed
"""

__version__ = "1.0.0"
