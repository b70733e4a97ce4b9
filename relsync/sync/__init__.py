"""Record reconciliation: identity resolution, merging and event sync."""
