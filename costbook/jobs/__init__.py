"""Remote background job wrappers and their execution log."""

from costbook.jobs.client import FunctionsClient
from costbook.jobs.service import BackgroundJobService

__all__ = ["BackgroundJobService", "FunctionsClient"]
