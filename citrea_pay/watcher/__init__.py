"""
Chain watcher: payment detection and fund consolidation.

- ChainObserver scans new blocks and marks matching invoices fulfilled
- SweepEngine moves fulfilled funds to the treasury
- Scheduler runs both on independent intervals
"""

from .latch import SingleFlight
from .observer import ChainObserver, ScanReport
from .scheduler import PeriodicTask, Scheduler
from .sweeper import SweepEngine, SweepError, SweepOutcome, SweepReport

__all__ = [
    "SingleFlight",
    "ChainObserver",
    "ScanReport",
    "PeriodicTask",
    "Scheduler",
    "SweepEngine",
    "SweepError",
    "SweepOutcome",
    "SweepReport",
]
