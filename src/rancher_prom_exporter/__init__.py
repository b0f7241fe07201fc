"""Prometheus exporter publishing the state of a Rancher installation."""

__version__ = "0.1.0"
