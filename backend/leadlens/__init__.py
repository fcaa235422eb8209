"""LeadLens analytics engine for lead-nurturing sites."""

__version__ = "1.0.0"
