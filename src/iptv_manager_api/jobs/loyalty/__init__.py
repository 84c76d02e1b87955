"""Loyalty job exports."""

from .redemption_expiry import expire_redemptions  # noqa: F401

__all__ = ["expire_redemptions"]
