"""
Exception Hierarchy for Urban Flood Susceptibility Mapping
===========================================================

All pipeline stages raise exceptions from this module so callers can
tell input problems apart from insufficient data or a failed cluster
mapping.

Hierarchy::

    UrbanFloodError
    ├── ConfigurationError            bad options, extents, empty geometries
    │   └── GridAlignmentError        band not co-registered / stack frozen
    ├── InsufficientTrainingDataError too few samples per class
    ├── ClusterMappingError           reference point cannot name a cluster
    ├── SchemaError                   imported sample table is malformed
    └── RasterIOError                 raster read / write failure
"""


class UrbanFloodError(Exception):
    """Base exception for the package."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(UrbanFloodError, ValueError):
    """Raised when an input layer or option violates a stage precondition."""


class GridAlignmentError(ConfigurationError):
    """Raised when a band does not share the stack grid."""


class InsufficientTrainingDataError(UrbanFloodError, ValueError):
    """Raised when a class has fewer samples than a classifier needs."""


class ClusterMappingError(UrbanFloodError):
    """Raised when the reference point cannot identify the flood cluster."""


class SchemaError(UrbanFloodError, ValueError):
    """Raised when a sample table lacks the expected columns."""


class RasterIOError(UrbanFloodError, IOError):
    """Raised when a raster cannot be read or written."""
