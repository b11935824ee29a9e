"""Engine services: ordering, path parsing, relation resolution, loading."""
