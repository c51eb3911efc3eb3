"""Error taxonomy for search and migration."""

from typing import Any, Dict, Optional


class RehomeError(Exception):
    """Base exception for all rehome errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class SearchFailure(RehomeError):
    """A single source query failed. Recovered as an empty result set."""

    def __init__(self, query: str, cause: BaseException):
        super().__init__("Source search failed", {"query": query, "error": cause})
        self.query = query
        self.cause = cause


class NoCandidate(RehomeError):
    """No search result cleared the similarity threshold."""

    def __init__(self, title: str, threshold: float):
        super().__init__("No candidate found", {"title": title, "threshold": threshold})
        self.title = title
        self.threshold = threshold


class StepFailure(RehomeError):
    """A migration sub-step raised; recorded in the report, never raised out of migrate()."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"Migration step '{step}' failed", {"error": cause})
        self.step = step
        self.cause = cause


class SameWorkError(RehomeError):
    """Source and target of a migration are the same work."""


class ConfigError(RehomeError):
    """Invalid command line or environment configuration."""
