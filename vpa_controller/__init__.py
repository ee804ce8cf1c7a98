"""Keeps VerticalPodAutoscalers in sync with VPA-class Knative PodAutoscalers."""

__version__ = "0.1.0"
