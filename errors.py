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

from typing import Optional


class QuizSessionError(Exception): pass


class RequestTimeout(QuizSessionError): pass


class TransportError(QuizSessionError): pass


class ValidationError(QuizSessionError): pass


class ProtocolError(QuizSessionError):
    """
    the server answered with an explicit error, kept verbatim in `payload`
    """

    def __init__(self, payload: Optional[dict] = None, message: Optional[str] = None):
        super().__init__(message or f"Server reported an error: {payload}")
        self.payload = payload


class HandshakeFailed(ProtocolError): pass


class LifecycleError(QuizSessionError):

    def __init__(self, reason: str, payload: Optional[dict] = None):
        super().__init__(reason)
        self.reason = reason
        self.payload = payload


class SessionLocked(LifecycleError):

    def __init__(self, payload: Optional[dict] = None):
        super().__init__("Locked", payload)


class ChallengeUnavailable(LifecycleError): pass
