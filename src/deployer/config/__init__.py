"""Pipeline definitions and the configuration store."""
