"""phylocourse package."""

__version__ = "0.1.0"

__all__ = [
    "data",
    "covariance",
    "continuous",
    "phylosignal",
    "diversification",
    "bisse",
    "simulate",
    "plotting",
    "walkthroughs",
    "schedule",
    "cli",
]
