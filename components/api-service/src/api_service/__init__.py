"""HTTP service for care protocols, assignments and reports."""
