"""
Staged load-generation engine.

Virtual users are driven through a ramp profile of stages, every HTTP call,
check and custom metric is recorded as a tagged sample, and pass/fail
thresholds are evaluated over the aggregated samples once the run ends.
"""

from .collector import MetricsCollector
from .config import LoadOptions, PlanError, Stage, default_options, load_options
from .load import LoadStatistics, StagedLoadRunner, VirtualUserContext
from .stages import StageScheduler
from .thresholds import (
    ThresholdSyntaxError,
    evaluate_thresholds,
    parse_thresholds,
    validate_thresholds,
)

__all__ = [
    "LoadOptions",
    "LoadStatistics",
    "MetricsCollector",
    "PlanError",
    "Stage",
    "StageScheduler",
    "StagedLoadRunner",
    "ThresholdSyntaxError",
    "VirtualUserContext",
    "default_options",
    "evaluate_thresholds",
    "load_options",
    "parse_thresholds",
    "validate_thresholds",
]
