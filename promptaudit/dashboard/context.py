"""Organization context for dashboard requests.

PromptAudit does not authenticate dashboard users itself. An upstream
gateway authenticates the caller and forwards the organization it resolved in
the ``X-PromptAudit-Org`` header; that value is the only source of org_id for
dashboard queries. Deploy PromptAudit so that this header cannot be set by
clients directly.
"""

from typing import Optional

from fastapi import Header, HTTPException

ORG_HEADER = "X-PromptAudit-Org"


async def require_org_id(
    org_id: Optional[str] = Header(None, alias=ORG_HEADER),
) -> str:
    """FastAPI dependency returning the trusted organization id.

    Raises:
        HTTPException(401): Header absent or blank.
    """
    if org_id is None or not org_id.strip():
        raise HTTPException(status_code=401, detail="Organization context required")
    return org_id.strip()
