"""Risk Assessment Parallel Task ORchestrator."""

__version__ = "1.0.3"
