"""Models, admission validation, an in-memory cluster client and reconcilers for remediating unhealthy nodes."""

__version__ = "0.1.0"
__all__ = ["types", "webhooks", "kube", "remediation", "controller", "config_controller"]