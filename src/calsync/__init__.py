"""Calendar synchronization and recurrence reconciliation engine."""

__version__ = "0.1.0"
