"""Page snapshots, focus probes and debounced change listeners."""

from .engine import ContrastMeasurement, ElementDescriptor, FocusProbe, PerceivedState, PerceptionEngine

__all__ = ["ContrastMeasurement", "ElementDescriptor", "FocusProbe", "PerceivedState", "PerceptionEngine"]
