"""
Domain layer for document conversion jobs.
Provides the job model, gateways (job store, file storage, insights), the
engine selector and a service that drives jobs through their lifecycle, so
front-ends (HTTP or others) can share the same core logic.
"""

from .engines import EngineSelector, build_default_selector
from .errors import ConversionFailed, DocSparkError, JobNotFound, JobValidationError
from .interfaces import FileStorageGateway, InsightsGateway, JobStoreGateway
from .models import ConversionRequest, Job, JobStatus
from .reaper import TtlReaper
from .service import ConversionService
