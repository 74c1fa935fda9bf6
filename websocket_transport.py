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

import asyncio
import json
import logging
from typing import Optional

import websockets
from websockets.asyncio.client import connect, ClientConnection
from websockets.protocol import State as WebsocketState

from config import ClientOptions
from errors import TransportError
from transport import Transport, TransportEvent


class WebsocketTransport(Transport):
    """
    Duplex channel to the live game service. Incoming frames are JSON arrays of messages;
    every message is published on its own.
    """

    def __init__(self, address: str, options: ClientOptions):
        super().__init__()
        self._address = address
        self._options = options
        self._websocket: Optional[ClientConnection] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing_event = asyncio.Event()
        self.close_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._websocket is not None and self._websocket.state == WebsocketState.OPEN

    async def open(self) -> None:
        logging.debug(f"Connecting to {self._address}")
        try:
            self._websocket = await connect(
                self._address,
                user_agent_header=self._options.user_agent,
                additional_headers={"Origin": self._options.api_base},
                open_timeout=self._options.http_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logging.exception(e)
            raise TransportError(f"Could not connect to {self._address}") from e
        self._reader_task = asyncio.create_task(self._reader())
        self._publish(TransportEvent.OPEN)

    async def _reader(self):
        closing_task = asyncio.create_task(self._closing_event.wait())
        try:
            while True:
                recv_task = asyncio.create_task(self._websocket.recv())
                done, pending = await asyncio.wait(
                    [recv_task, closing_task],
                    return_when=asyncio.FIRST_COMPLETED
                )

                # close() was called
                if self._closing_event.is_set():
                    recv_task.cancel()
                    break

                message = recv_task.result()
                if isinstance(message, str):
                    self._parse_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logging.debug(f"Websocket connection closed: {e}")
            self.close_reason = str(e)
        finally:
            closing_task.cancel()
            self._publish(TransportEvent.CLOSE, self.close_reason)

    def _parse_message(self, message: str):
        if self._options.log_messages:
            logging.info(f"RECV: {message}")
        try:
            packets = json.loads(message)
        except json.JSONDecodeError as e:
            logging.warning(f"Server sent non-JSON data; details:")
            logging.exception(e)
            return
        if isinstance(packets, dict):
            packets = [packets]
        for packet in packets:
            if not isinstance(packet, dict):
                logging.warning(f"Malformed packet - not an object")
                continue
            self._publish(TransportEvent.MESSAGE, packet)

    async def send(self, message) -> None:
        if not self.is_open:
            raise TransportError("Websocket is not open")
        data = json.dumps(message)
        if self._options.log_messages:
            logging.info(f"SEND: {data}")
        try:
            await self._websocket.send(data)
        except websockets.exceptions.ConnectionClosed as e:
            logging.exception(e)
            raise TransportError("Websocket closed while sending") from e

    async def close(self) -> None:
        if self._websocket is None:
            return
        logging.debug(f"Closing websocket")
        self.close_reason = self.close_reason or "Client closed"
        self._closing_event.set()
        await self._websocket.close()
        if self._reader_task is not None:
            await self._reader_task
