"""PromptAudit dashboard package.

    service.py — DashboardService aggregation queries
    api.py     — /api/dashboard/* and /api/prompts/{id} routes
    context.py — require_org_id() dependency (trusted org header)
"""
