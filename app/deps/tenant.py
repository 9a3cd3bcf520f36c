from uuid import UUID

from fastapi import Header, HTTPException, Query


def get_active_client(
    client_query: str | None = Query(default=None, alias="client_id"),
    x_client_id: str | None = Header(default=None, alias="X-Client-Id"),
) -> UUID:
    active = x_client_id or client_query
    if not active:
        raise HTTPException(
            status_code=400,
            detail="Missing client context. Provide X-Client-Id header or client_id query param.",
        )
    try:
        return UUID(active)
    except ValueError:
        raise HTTPException(status_code=400, detail="client context must be a UUID")
