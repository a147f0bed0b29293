"""PromptAudit — detects sensitive data in prompts sent to AI tools.

Packages:
    scanner/   — detector registry, scanner, masker, severity resolver
    capture/   — capture pipeline and POST /api/capture
    dashboard/ — aggregation service and dashboard API
    store/     — PromptStore protocol and the aiosqlite backend
"""

__version__ = "1.0.0"
