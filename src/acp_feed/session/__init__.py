"""Session lifecycle and the per-task registry."""

from acp_feed.session.controller import CommandResult, SessionController, SessionStatus, SessionTransport
from acp_feed.session.registry import SessionRegistry

__all__ = ["CommandResult", "SessionController", "SessionRegistry", "SessionStatus", "SessionTransport"]
