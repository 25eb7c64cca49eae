"""Change-data-capture pipeline: change source, heuristics, processors and scheduler."""

from .checkpoint import (
    InMemoryWatermarkStore,
    PersistentWatermarkStore,
    WatermarkStore,
    build_watermark_store,
)
from .closure import (
    ClosurePolicy,
    ClosureVerdict,
    ShiftClosureFilter,
    ShiftClosureRegistry,
)
from .dedup import DedupCache, fingerprint
from .processor import ProcessorResult, TableProcessor
from .records import ChangeRecord, RowOutcome, RowState
from .scheduler import AdaptiveScheduler, CycleError, PollingInterval
from .source import ChangeSource
from .splits import SplitOperation, SplitOperationTracker, correlation_key
from .state import PipelineState

__all__ = [
    "AdaptiveScheduler",
    "ChangeRecord",
    "ChangeSource",
    "ClosurePolicy",
    "ClosureVerdict",
    "CycleError",
    "DedupCache",
    "InMemoryWatermarkStore",
    "PersistentWatermarkStore",
    "PipelineState",
    "PollingInterval",
    "ProcessorResult",
    "RowOutcome",
    "RowState",
    "ShiftClosureFilter",
    "ShiftClosureRegistry",
    "SplitOperation",
    "SplitOperationTracker",
    "TableProcessor",
    "WatermarkStore",
    "build_watermark_store",
    "correlation_key",
    "fingerprint",
]
