"""Security group reconciliation for Kubernetes clusters on AWS."""
