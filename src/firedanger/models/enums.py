from enum import Enum


class CoverClass(str, Enum):
    FOREST = "forest"
    NON_FOREST = "non_forest"

    @property
    def code(self) -> int:
        """Value used for this class in the classified cover raster."""
        return {
            CoverClass.FOREST: 1,
            CoverClass.NON_FOREST: 2,
        }[self]


class Aggregation(str, Enum):
    STATE = "state"  # windowed mean
    FLUX = "flux"  # windowed sum


class RankRule(str, Enum):
    ZERO_INFLATED = "zero_inflated"
    PLAIN = "plain"


class ProductShape(str, Enum):
    AGGREGATED = "aggregated"
    ENSEMBLE = "ensemble"


class IngestionStatus(str, Enum):
    READY = "READY"
    RETRYABLE = "RETRYABLE"
    ACCEPTED_STALE = "ACCEPTED_STALE"


class ValidationStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"

    @property
    def exit_code(self) -> int:
        return {
            ValidationStatus.PASS: 0,
            ValidationStatus.FAIL: 1,
            ValidationStatus.WARN: 2,
        }[self]
