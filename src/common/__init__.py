"""
Shared configuration and error types.
"""

from .config import (
    AnalysisConfig,
    FeatureLevel,
    SampleIdStrategy,
    Settings,
    SourceConfig,
    Tool,
    VariantComparison,
    get_settings,
)
from .exceptions import (
    AmbiguousSampleIdError,
    ConstantInputError,
    DegenerateSampleError,
    EmptyIntersectionError,
    FeatureLevelMismatchError,
    InconsistentFeatureSetError,
    InvalidCountsError,
    InvalidFeatureLengthError,
    MalformedQuantFileError,
    NoFilesFoundError,
    QuantComparisonError,
    SampleMismatchError,
    UnmappedFeatureError,
)

__all__ = [
    'AnalysisConfig', 'FeatureLevel', 'SampleIdStrategy', 'Settings',
    'SourceConfig', 'Tool', 'VariantComparison', 'get_settings',
    'AmbiguousSampleIdError', 'ConstantInputError', 'DegenerateSampleError',
    'EmptyIntersectionError', 'FeatureLevelMismatchError',
    'InconsistentFeatureSetError', 'InvalidCountsError',
    'InvalidFeatureLengthError', 'MalformedQuantFileError',
    'NoFilesFoundError', 'QuantComparisonError', 'SampleMismatchError',
    'UnmappedFeatureError',
]
