"""Pydantic schemas for the pickup audit service."""

from .audit import AuditRecord

__all__ = ["AuditRecord"]
