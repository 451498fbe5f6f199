"""Infrastructure modules for the position monitor"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .ledger import Ledger, LedgerError  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"CycleStats",
	"Ledger",
	"LedgerError",
	"RateLimiter",
]
