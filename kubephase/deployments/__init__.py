"""ObjectDeployment controller."""

from kubephase.deployments.reconciler import DeploymentReconciler, revision_selector

__all__ = ["DeploymentReconciler", "revision_selector"]
