"""Temporal activities for the video maker pipeline."""

from .prediction_activities import start_prediction, fetch_prediction

__all__ = [
    "start_prediction",
    "fetch_prediction"
]
