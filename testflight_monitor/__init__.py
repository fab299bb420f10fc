"""TestFlight invite monitoring: periodic status checks, check history and status-change notifications."""

from .models import Build, BuildStatus, CheckLogEntry

__version__ = "0.1.0"

__all__ = ["Build", "BuildStatus", "CheckLogEntry", "__version__"]
