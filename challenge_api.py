"""
QuizLink
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import json
import logging
from typing import Optional

import httpx

from config import ClientOptions
from errors import ProtocolError, TransportError

CHALLENGE_ENDPOINT = "/rest/challenges/"


class ChallengeApi:
    """
    Request/response calls of the challenge service.
    """

    def __init__(self, options: ClientOptions, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._options = options
        self._client = httpx.AsyncClient(
            base_url=options.api_base,
            timeout=options.http_timeout,
            transport=transport,
            headers={
                "user-agent": options.user_agent,
                "referer": f"{options.api_base}/",
                "accept-language": "en-US,en;q=0.8",
                "accept": "*/*",
            },
        )

    async def resolve_pin(self, pin: str) -> dict:
        return await self._request("GET", f"{CHALLENGE_ENDPOINT}pin/{pin}")

    async def progress(self, challenge_id: str, up_to_question: Optional[int] = None) -> dict:
        params = {} if up_to_question is None else {"upToQuestion": up_to_question}
        return await self._request("GET", f"{CHALLENGE_ENDPOINT}{challenge_id}/progress", params=params)

    async def join(self, challenge_id: str, nickname: str) -> dict:
        return await self._request("POST", f"{CHALLENGE_ENDPOINT}{challenge_id}/join/", params={"nickname": nickname})

    async def submit_answers(self, challenge_id: str, payload: dict) -> None:
        await self._request("POST", f"{CHALLENGE_ENDPOINT}{challenge_id}/answers", json=payload, expect_json=False)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, expect_json: bool = True, **kwargs):
        if self._options.log_messages:
            logging.info(f"SEND: {method} {url} {kwargs}")
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logging.exception(e)
            raise TransportError(f"{method} {url} failed") from e

        if self._options.log_messages:
            logging.info(f"RECV: {response.status_code} {response.text}")

        if response.is_error:
            try:
                payload = response.json()
            except json.JSONDecodeError:
                payload = {"error": response.status_code, "description": response.text}
            logging.warning(f"{method} {url} answered {response.status_code}")
            raise ProtocolError(payload)

        if not expect_json:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as e:
            logging.exception(e)
            raise ProtocolError({"error": "malformed response", "description": response.text}) from e
