"""Session id policies for the streamable HTTP transport."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod

ID_PREFIX = "mcp-session-"


class InvalidSessionIdError(ValueError):
    """Raised when a session id is malformed or not allowed."""


class SessionIdManager(ABC):
    """Decides how session ids are issued, checked and ended."""

    #: Whether clients may end their own sessions with a DELETE request.
    client_termination_allowed: bool = True

    @abstractmethod
    def generate(self) -> str:
        """Return a new session id, or an empty string when sessions are not used."""

    @abstractmethod
    def validate(self, session_id: str) -> bool:
        """Return True if the id belongs to a terminated session.

        Raise InvalidSessionIdError if the id is malformed or the lookup fails.
        """

    @abstractmethod
    def terminate(self, session_id: str) -> bool:
        """Mark the session as terminated.

        Return True if the server's policy does not let clients terminate
        sessions. Raise if the id is invalid or termination fails.
        """


class StatelessSessionIdManager(SessionIdManager):
    """Keeps no session state: no ids are issued and none are accepted."""

    def generate(self) -> str:
        return ""

    def validate(self, session_id: str) -> bool:
        if session_id:
            raise InvalidSessionIdError("session id is not allowed to be set when stateless")
        return False

    def terminate(self, session_id: str) -> bool:
        # No session state is held, so there is nothing to mark as ended.
        return not self.client_termination_allowed


class InsecureStatefulSessionIdManager(SessionIdManager):
    """Issues random UUID-based ids and only checks their shape.

    Ids are not tracked, so a well-formed id made up by a client is accepted.
    """

    def generate(self) -> str:
        return ID_PREFIX + str(uuid.uuid4())

    def validate(self, session_id: str) -> bool:
        if not session_id.startswith(ID_PREFIX):
            raise InvalidSessionIdError(f"invalid session id: {session_id}")
        try:
            uuid.UUID(session_id[len(ID_PREFIX):])
        except ValueError as exc:
            raise InvalidSessionIdError(f"invalid session id: {session_id}") from exc
        return False

    def terminate(self, session_id: str) -> bool:
        # Ids are not tracked, so termination only reports the policy.
        return not self.client_termination_allowed