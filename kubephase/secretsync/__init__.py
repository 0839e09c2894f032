"""SecretSync controller: copies Secrets through the dynamic cache."""

from kubephase.secretsync.reconciler import SecretSyncReconciler

__all__ = ["SecretSyncReconciler"]
