"""Policy layer: the active definition and the per-execution snapshots frozen from it."""
