"""Diagnostic engine, history and repair planning for stackctl instances."""
from __future__ import annotations

from .checks import collect_checks
from .engine import DiagnosticEngine, run_checks
from .history import DiagnosticHistory, HistoryError
from .models import (
    CheckContext,
    CheckDefinition,
    CheckOptions,
    CheckResult,
    CheckStatus,
    CriticalIssue,
    Diagnostic,
    build_diagnostic,
    extract_critical_issues,
)
from .repairs import (
    RepairAction,
    RepairExecution,
    RepairPlan,
    execute_plan,
    plan_repairs,
    repair_improved,
)
from .runs import RUNS_FILE, DiagnosticRunStore

__all__ = [
    "CheckContext",
    "CheckDefinition",
    "CheckOptions",
    "CheckResult",
    "CheckStatus",
    "CriticalIssue",
    "Diagnostic",
    "DiagnosticEngine",
    "DiagnosticHistory",
    "DiagnosticRunStore",
    "HistoryError",
    "RepairAction",
    "RepairExecution",
    "RepairPlan",
    "RUNS_FILE",
    "build_diagnostic",
    "collect_checks",
    "execute_plan",
    "extract_critical_issues",
    "plan_repairs",
    "repair_improved",
    "run_checks",
]
