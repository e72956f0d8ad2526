"""Workflow document format and parser."""

from __future__ import annotations

from .models import RetrySpec, StepSpec, WorkflowSpec
from .parser import WorkflowParser

__all__ = ["RetrySpec", "StepSpec", "WorkflowSpec", "WorkflowParser"]
