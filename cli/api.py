from typing import Any, Dict, Optional

import httpx

from mindbody.config import Settings
from mindbody.core.auth import TokenManager
from mindbody.core.client import MindbodyClient
from mindbody.core.exceptions import MindbodyError

from .tokens import open_token_store


async def test_connection(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Probe the public API and, when staff credentials are set, issue a token.

    Issued tokens are recorded in the token table.
    """
    result: Dict[str, Any] = {"base_url": settings.api_base_url, "site_id": settings.site_id}

    async with open_token_store(settings) as token_store:
        try:
            token_manager = TokenManager(settings, token_store=token_store, transport=transport)
            token_manager.validate_configuration()
        except MindbodyError as e:
            result.update({"success": False, "error": str(e)})
            return result

        async with MindbodyClient.for_public_api(settings, token_manager, transport) as client:
            result["connection"] = await client.test_connection()
            if settings.staff_username and settings.staff_password:
                try:
                    await client.authenticate(settings.staff_username, settings.staff_password)
                    result["authentication"] = True
                except MindbodyError as e:
                    result["authentication"] = False
                    result["authentication_error"] = str(e)

    result["success"] = bool(result["connection"]) and result.get("authentication", True)
    return result
