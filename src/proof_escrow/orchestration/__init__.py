"""Orchestration layer — commit-then-act workflow and the cron driver."""

from proof_escrow.orchestration.cron import build_scheduler
from proof_escrow.orchestration.workflow import DealWorkflow

__all__ = ["DealWorkflow", "build_scheduler"]
