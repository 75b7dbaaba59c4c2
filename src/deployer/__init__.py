"""deployer: runs configured deployment pipelines when requests arrive on a queue."""

__version__ = "0.1.0"
