from typing import Annotated, Optional

from fastapi import Depends, Header

ANONYMOUS_USER = "anonymous"


async def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> str:
    """
    Caller identity as forwarded by the upstream auth layer.

    Credentials are validated before requests reach the gateway; this only
    reads the resulting user id.
    """
    user_id = (x_user_id or "").strip()
    return user_id or ANONYMOUS_USER


CurrentUserIdDep = Annotated[str, Depends(get_current_user_id)]
