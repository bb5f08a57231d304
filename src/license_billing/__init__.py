"""License billing and employee-activity state engine."""

__version__ = "0.1.0"
