"""Recurring job entrypoints dispatched by the loyalty scheduler."""

__all__ = ["loyalty"]
