"""Utility exports for concurrency helpers."""

from data_handler.utils.concurrency import ExclusiveAccess

__all__ = ["ExclusiveAccess"]
