"""Source SIS client and shape-tagged responses."""

from attendance_sync.sources.client import SISClient  # noqa: F401
from attendance_sync.sources.shapes import SourceResponse  # noqa: F401
