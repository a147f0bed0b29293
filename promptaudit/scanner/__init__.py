"""PromptAudit scanner package.

Rule-based detection of sensitive data in prompt text:

  - definitions.py — DetectorDefinition, built-in detectors, build_registry()
  - engine.py      — scan_text(): every occurrence of every detector, in order
  - masking.py     — mask_value(): display-safe rendering of a raw match
  - severity.py    — resolve_overall_severity(): highest severity present
"""
