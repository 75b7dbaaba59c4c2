"""Command-line interface (``deployer``)."""
