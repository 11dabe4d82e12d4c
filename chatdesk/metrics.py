"""Prometheus metric registration shared by the API, relay and presence modules."""

from __future__ import annotations

from typing import Sequence

from prometheus_client import REGISTRY


def get_or_create_metric(metric_cls, name: str, documentation: str, labelnames: Sequence[str] = ()):
    """Return the registered collector called *name*, creating it on first use.

    Re-importing a module (tests, reloaders) must not register a duplicate.
    """

    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


__all__ = ["get_or_create_metric"]
