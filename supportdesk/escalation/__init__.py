"""Escalation decisions and human handoff notifications."""

from .engine import EscalationEngine
from .notifier import HandoffNotifier

__all__ = ["EscalationEngine", "HandoffNotifier"]
