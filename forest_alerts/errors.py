"""
Exception types raised by the alert pipeline.

Algorithmic stages raise these and never catch them; only the orchestration
layer in ``pipeline`` decides whether a failure aborts a run.
"""


class ForestAlertsError(Exception):
    """Base class for all errors raised by forest_alerts."""


class MissingBandError(ForestAlertsError, KeyError):
    """A required spectral or QA band is absent from a scene."""

    def __init__(self, band: str, available=()):
        self.band = band
        self.available = tuple(available)
        super().__init__(band)

    def __str__(self):
        return f"Band '{self.band}' not found (available: {', '.join(self.available) or 'none'})"


class EmptySceneCollectionError(ForestAlertsError):
    """No scene passed the date, bounds and cloud-cover filters."""


class RegionNotFoundError(ForestAlertsError, LookupError):
    """Unknown sub-region name."""

    def __init__(self, name: str, parent: str = None):
        self.name = name
        self.parent = parent
        where = f" in '{parent}'" if parent else ""
        super().__init__(f"Region '{name}' not found{where}")


class SourceUnavailableError(ForestAlertsError, IOError):
    """The scene source could not be reached."""


class InvalidConfigError(ForestAlertsError, ValueError):
    """A threshold or analysis parameter is outside its valid range."""


class GridMismatchError(ForestAlertsError, ValueError):
    """Rasters that must share a grid do not."""


class AnalysisCancelledError(ForestAlertsError):
    """An in-flight analysis was cancelled or superseded."""
