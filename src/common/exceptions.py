"""
Error taxonomy for the quantification comparison pipeline.

Every error is fatal to the run. Each carries the stage where it was raised
and, where known, the sample and file involved, so that a misaligned sample
or a bad input file can be traced from the log alone.
"""

from pathlib import Path
from typing import Optional, Union


class QuantComparisonError(Exception):
    """Base class for all data-integrity failures."""

    stage = "unknown"

    def __init__(
        self,
        message: str,
        sample: Optional[str] = None,
        path: Optional[Union[str, Path]] = None,
        stage: Optional[str] = None
    ):
        self.message = message
        self.sample = sample
        self.path = Path(path) if path is not None else None
        if stage is not None:
            self.stage = stage
        super().__init__(self._format())

    def __reduce__(self):
        # Rebuild from the raw fields when sent back from a worker process
        return (self.__class__, (self.message, self.sample, self.path, self.stage))

    def _format(self) -> str:
        context = []
        if self.sample is not None:
            context.append(f"sample={self.sample}")
        if self.path is not None:
            context.append(f"file={self.path}")
        suffix = f" ({', '.join(context)})" if context else ""
        return f"[{self.stage}] {self.message}{suffix}"


# Discovery / loading
class NoFilesFoundError(QuantComparisonError):
    stage = "discovery"


class AmbiguousSampleIdError(QuantComparisonError):
    stage = "discovery"


class MalformedQuantFileError(QuantComparisonError):
    stage = "loading"


class InconsistentFeatureSetError(QuantComparisonError):
    stage = "loading"


class UnmappedFeatureError(QuantComparisonError):
    stage = "aggregation"


# Normalization
class InvalidFeatureLengthError(QuantComparisonError):
    stage = "normalization"


class InvalidCountsError(QuantComparisonError):
    stage = "normalization"


class DegenerateSampleError(QuantComparisonError):
    stage = "normalization"


# Comparison
class EmptyIntersectionError(QuantComparisonError):
    stage = "comparison"


class SampleMismatchError(QuantComparisonError):
    stage = "comparison"


class FeatureLevelMismatchError(QuantComparisonError):
    stage = "comparison"


class ConstantInputError(QuantComparisonError):
    stage = "comparison"
