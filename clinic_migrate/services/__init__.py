"""Services: strategy resolution, retries, mapping, transform, validation and promotion."""
