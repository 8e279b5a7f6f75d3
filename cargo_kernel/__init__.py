"""
Cargo Kernel - document workflow core

State machine, numbering and allocation core for the air-waybill
document pipeline:
- Configurable per-kind state machine with role gates
- Master waybill batch sequencing
- Child waybill numbering and composite-key deduplication
- Coordination lifecycle with compensating waybill release
- Append-only state history
"""

__version__ = "0.1.0"
