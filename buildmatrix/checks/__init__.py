"""Checks aggregation module.

This module handles:
- Dependency audit, policy/license and formatting checks
- Lint across every unit and feature set
- Hierarchical pass/fail reports
"""

from buildmatrix.checks.report import CheckReport, CheckResult

__all__ = ["CheckReport", "CheckResult"]
