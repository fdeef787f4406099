"""Infrastructure modules for aster-futures-trader"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .clock_sync import ClockSync  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"ClockSync",
	"MetricsRecorder",
]
