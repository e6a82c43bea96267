"""Per-process power usage sampler with a bounded in-memory history."""
