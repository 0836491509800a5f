"""Job discovery and filtering."""

from testpilot.discovery.finder import DiscoveredJobs, JobFinder, JobMetadata

__all__ = [
    "DiscoveredJobs",
    "JobFinder",
    "JobMetadata",
]
