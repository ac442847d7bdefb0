# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for the reverse-logistics engine.

- sla_monitor_flow: Scheduled deadline sweep (NDR escalation, return SLA
  breaches, due workflow actions)
- ndr_tracking_flow: Batch intake of courier tracking updates
"""

from .sla_monitor_flow import sla_monitor_flow
from .ndr_tracking_flow import ndr_tracking_flow

__all__ = [
    "sla_monitor_flow",
    "ndr_tracking_flow"
]
