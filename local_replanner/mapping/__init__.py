from local_replanner.mapping.distance_ring_buffer import (
    BufferInfo,
    DistanceRingBuffer,
    InsertionResult,
)

__all__ = ["BufferInfo", "DistanceRingBuffer", "InsertionResult"]
