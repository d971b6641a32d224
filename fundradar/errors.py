"""Exceptions that carry the HTTP status the API layer should answer with."""
from __future__ import annotations


class FundRadarError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(FundRadarError):
    """A required API key or credential is missing from the environment."""


class ClusteringError(FundRadarError):
    """Clustering or matching failed; the whole request fails with no partial result."""


class StartupImportError(FundRadarError, ValueError):
    status_code = 400


class InvalidRequestError(FundRadarError):
    """The request is missing a required field or carries an invalid value."""
    status_code = 400
