import logging
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class TwilioTransport:
    """
    Sends WhatsApp messages and downloads inbound media through Twilio's REST API.

    The underlying httpx client is created and closed by the app lifespan.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.client = client or httpx.AsyncClient(
            auth=(account_sid, auth_token), timeout=30.0, follow_redirects=True
        )

    @staticmethod
    def _whatsapp(number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    async def send(self, to: str, body: str, media_url: Optional[str] = None) -> None:
        payload = {
            "From": self._whatsapp(self.from_number),
            "To": self._whatsapp(to),
            "Body": body,
        }
        if media_url:
            payload["MediaUrl"] = media_url

        response = await self.client.post(
            f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json", data=payload
        )
        response.raise_for_status()

    async def fetch_media(self, media_url: str) -> Tuple[bytes, str]:
        """Download an inbound attachment. Returns (content, content type)."""
        response = await self.client.get(media_url)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        logger.info(f"Fetched {len(response.content)} bytes of {content_type}")
        return response.content, content_type

    async def close(self) -> None:
        await self.client.aclose()
