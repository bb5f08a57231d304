"""HTTP adapter for the billing engine."""
