"""AI-driven trade autopilot: quota-aware recommendations, risk gating,
queued execution and protective orders."""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
