"""PromptAudit models package.

Defines the shared value types used across the scanner, the capture pipeline
and the dashboard:

  - risk.py — Severity (total order critical > high > medium > low, plus none)
"""
