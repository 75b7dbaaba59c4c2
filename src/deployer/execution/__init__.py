"""Variable substitution, action execution and the worker pool."""
