"""Terminal presentation for termquiz."""

from .viewmodel import ViewModel, build_view_model

__all__ = ["ViewModel", "build_view_model"]
