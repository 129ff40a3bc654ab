"""
Templates Package

HTML bodies of notices sent to customers.
"""
from .notices import get_resolution_notice, get_rating_scale, RESOLUTION_SUBJECT

__all__ = [
    "get_resolution_notice",
    "get_rating_scale",
    "RESOLUTION_SUBJECT",
]
