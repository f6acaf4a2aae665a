"""Internal services controller: run privileged pipelines on behalf of tenant requests."""

__version__ = "0.1.0"
