"""Kubernetes backend for echo deployments."""
