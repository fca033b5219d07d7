"""
Error types for the station database builder
"""

from typing import Optional


class StationDBError(Exception):
    """Base class for all station database errors"""


class ValidationError(StationDBError):
    """A required input is missing, empty or malformed"""

    def __init__(self, artifact: str, message: str):
        self.artifact = artifact
        self.message = message
        super().__init__(f"{artifact}: {message}")


class ManifestExistsError(ValidationError):
    """Manifest already exists and overwrite was not requested"""

    def __init__(self, path: str):
        super().__init__(path, "manifest already exists (use --force to overwrite)")


class FetchError(StationDBError):
    """Upstream lookup failed for a single market, lineup or station"""

    def __init__(self, target: str, message: str, status_code: Optional[int] = None):
        self.target = target
        self.status_code = status_code
        super().__init__(f"{target}: {message}")


class TransportError(FetchError):
    """Network failure, timeout or unusable HTTP status"""


class MalformedResponseError(FetchError):
    """Upstream answered, but not with a JSON array of records"""


class IntegrityError(StationDBError):
    """Manifest statistics disagree with the station database"""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class LockError(StationDBError):
    """Another build holds the lock on the database files"""


class BatchFailedError(StationDBError):
    """A batch run finished without a single successful item"""

    def __init__(self, stats):
        self.stats = stats
        super().__init__(f"No items were successfully processed "
                         f"({stats.failed} failed, {stats.empty} empty)")
