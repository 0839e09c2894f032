"""kubephase: phased, revisioned rollout of arbitrary Kubernetes objects."""

__version__ = "0.1.0"
